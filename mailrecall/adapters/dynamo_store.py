# Summary of file: DynamoDB message store (dbQuery capability over boto3)

import asyncio
import logging
from decimal import Decimal
from functools import reduce
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key

from mailrecall.common.capabilities import DBQuery, FilterClause, QueryPage

logger = logging.getLogger("mailrecall.adapter.dynamo")


class DynamoMessageStore:
    """
    Runs DBQuery requests against DynamoDB tables.

    One boto3 resource is created per store and shared by every table handle.
    Numeric attributes come back from boto3 as Decimal; they are converted to
    int/float so callers can treat items as plain JSON.
    """

    def __init__(self, region: str = "us-east-1", resource=None):
        self._resource = resource or boto3.resource("dynamodb", region_name=region)
        self._tables: Dict[str, Any] = {}

    def _table(self, name: str):
        if name not in self._tables:
            self._tables[name] = self._resource.Table(name)
        return self._tables[name]

    async def query(self, request: DBQuery) -> QueryPage:
        return await asyncio.to_thread(self._query_sync, request)

    def _query_sync(self, request: DBQuery) -> QueryPage:
        params = self.build_params(request)
        logger.debug("DynamoDB query on %s: %s", request.table, {k: v for k, v in params.items() if k != "KeyConditionExpression"})
        response = self._table(request.table).query(**params)
        items = [_plain(item) for item in response.get("Items", [])]
        return QueryPage(
            items=items,
            last_key=_plain(response["LastEvaluatedKey"]) if response.get("LastEvaluatedKey") else None,
            count=int(response.get("Count", len(items))),
            scanned=int(response.get("ScannedCount", len(items))),
        )

    @staticmethod
    def build_params(request: DBQuery) -> Dict[str, Any]:
        """Translate a DBQuery into boto3 ``Table.query`` keyword arguments."""
        if not request.key_condition:
            raise ValueError("key_condition must name at least one key attribute")

        key_expr = reduce(
            lambda acc, cond: acc & cond,
            [Key(name).eq(value) for name, value in request.key_condition.items()],
        )
        params: Dict[str, Any] = {
            "KeyConditionExpression": key_expr,
            "ScanIndexForward": request.scan_forward,
        }

        filter_expr = _combine([_attr_condition(c) for c in request.filters], "and")
        any_expr = _combine([_attr_condition(c) for c in request.any_filters], "or")
        if filter_expr is not None and any_expr is not None:
            params["FilterExpression"] = filter_expr & any_expr
        elif filter_expr is not None or any_expr is not None:
            params["FilterExpression"] = filter_expr if filter_expr is not None else any_expr

        if request.index:
            params["IndexName"] = request.index
        if request.limit:
            params["Limit"] = request.limit
        if request.exclusive_start_key:
            params["ExclusiveStartKey"] = request.exclusive_start_key
        if request.select_count:
            params["Select"] = "COUNT"
        return params


def _attr_condition(clause: FilterClause):
    attr = Attr(clause.attribute)
    if clause.op == "eq":
        return attr.eq(clause.value)
    if clause.op == "ne":
        return attr.ne(clause.value)
    if clause.op == "gte":
        return attr.gte(clause.value)
    if clause.op == "lt":
        return attr.lt(clause.value)
    return attr.contains(clause.value)


def _combine(conditions: List, mode: str) -> Optional[Any]:
    if not conditions:
        return None
    if mode == "and":
        return reduce(lambda acc, cond: acc & cond, conditions)
    return reduce(lambda acc, cond: acc | cond, conditions)


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, set):
        return [_plain(v) for v in sorted(value, key=str)]
    return value
