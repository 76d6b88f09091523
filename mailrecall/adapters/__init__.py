from .dynamo_store import DynamoMessageStore
from .pinecone_index import PineconeVectorIndex

__all__ = ["DynamoMessageStore", "PineconeVectorIndex"]
