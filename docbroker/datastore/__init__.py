"""
Document store access: CouchDB client, collection policies and the
cache-first facade.
"""

from docbroker.datastore.collections import ALL_KEY, Collection, CollectionPolicy
from docbroker.datastore.couchdb import CouchDBClient, DocumentStore, SaveResult
from docbroker.datastore.facade import DocumentStoreFacade

__all__ = [
    "ALL_KEY",
    "Collection",
    "CollectionPolicy",
    "CouchDBClient",
    "DocumentStore",
    "DocumentStoreFacade",
    "SaveResult",
]
