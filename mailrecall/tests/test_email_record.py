"""Tests for mapping raw message-store items onto EmailRecord."""

from mailrecall.common.schemas.email import EmailRecord


class TestFromItem:
    def test_pascal_case_item(self):
        record = EmailRecord.from_item({
            "MessageId": "m-1",
            "ThreadId": "t-1",
            "userId": "user-1",
            "From": "alerts@chase.com",
            "To": "me@mailrecall.example, cc@mailrecall.example",
            "Subject": "Fraud alert",
            "Body": "Please review",
            "Timestamp": 1718204400000,
            "Direction": "incoming",
            "IsUnread": True,
        })

        assert record.message_id == "m-1"
        assert record.thread_id == "t-1"
        assert record.sender == "alerts@chase.com"
        assert record.recipients == ["me@mailrecall.example", "cc@mailrecall.example"]
        assert record.direction == "received"
        assert record.is_unread is True
        assert record.timestamp == 1718204400000

    def test_camel_case_item(self):
        record = EmailRecord.from_item({
            "messageId": "m-2",
            "from": "me@mailrecall.example",
            "to": ["bob@acme.com"],
            "subject": "Proposal",
            "eventType": "email.sent",
            "createdAt": "2024-06-12T15:00:00Z",
        })

        assert record.direction == "sent"
        assert record.event_type == "email.sent"
        assert record.timestamp == 1718204400000

    def test_seconds_timestamp_is_promoted(self):
        assert EmailRecord.from_item({"Timestamp": 1718204400}).timestamp == 1718204400000

    def test_unparseable_timestamp(self):
        assert EmailRecord.from_item({"Timestamp": "yesterday"}).timestamp == 0

    def test_participants_inferred_from_key_names(self):
        record = EmailRecord.from_item({
            "senderAddress": "billing@amex.com",
            "mail_to_list": ["me@mailrecall.example"],
        })

        assert record.sender == "billing@amex.com"
        assert record.recipients == ["me@mailrecall.example"]

    def test_sender_inferred_from_address_value(self):
        record = EmailRecord.from_item({"contact": "billing@amex.com", "Subject": "Statement"})

        assert record.sender == "billing@amex.com"

    def test_unknown_direction(self):
        assert EmailRecord.from_item({"Direction": "sideways"}).direction == "unknown"

    def test_empty_item(self):
        record = EmailRecord.from_item(None)

        assert record.sender == ""
        assert record.channel == "email"


class TestParticipants:
    def test_participant_text_by_direction(self):
        record = EmailRecord(sender="a@x.com", recipients=["b@y.com", "c@z.com"])

        assert record.participant_text("received") == "a@x.com"
        assert record.participant_text("sent") == "b@y.com c@z.com"
        assert record.participant_text() == "a@x.com b@y.com c@z.com"

    def test_counterpart(self):
        received = EmailRecord(sender="a@x.com", recipients=["me@m.com"], direction="received")
        sent = EmailRecord(sender="me@m.com", recipients=["b@y.com"], direction="sent")

        assert received.counterpart == "a@x.com"
        assert sent.counterpart == "b@y.com"
        assert EmailRecord(direction="sent").counterpart == "unknown recipient"

    def test_raw_is_not_dumped(self):
        record = EmailRecord.from_item({"From": "a@x.com", "Custom": 1})

        assert record.raw["Custom"] == 1
        assert "raw" not in record.model_dump()
