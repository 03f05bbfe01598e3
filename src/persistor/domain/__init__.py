"""Domain types: model descriptions, managed objects, change sets, commit events and queries."""

from persistor.domain.events import CommitEvent, EventType
from persistor.domain.model import AttributeDescription, EntityDescription, JSONValue, Model
from persistor.domain.objects import ChangeSet, ManagedObject, ObjectSnapshot
from persistor.domain.query import FetchRequest, Predicate, all_of, any_of, negate, where

__all__ = [
    "AttributeDescription",
    "ChangeSet",
    "CommitEvent",
    "EntityDescription",
    "EventType",
    "FetchRequest",
    "JSONValue",
    "ManagedObject",
    "Model",
    "ObjectSnapshot",
    "Predicate",
    "all_of",
    "any_of",
    "negate",
    "where",
]
