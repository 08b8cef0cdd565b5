"""Concrete backends for the pipeline ports: MongoDB storage and an HTTP upstream client."""

from .http_fetch import HttpFetchClient
from .mongo_storage import MongoOpportunityStorage, MongoRunStore, connect

__all__ = ['HttpFetchClient', 'MongoOpportunityStorage', 'MongoRunStore', 'connect']
