"""
docmodel - typed document models on top of an FQL document database.

Declare a pydantic schema once, get CRUD, bulk and index queries compiled
for you and every result validated back into the schema.
"""

from docmodel.core.database import Client, Executor, Outcome
from docmodel.core.document import BuiltDocument
from docmodel.core.errors import (
    ConfigurationError,
    CountMismatchError,
    DocModelError,
    ExistenceError,
    TransportError,
    ValidationError,
)
from docmodel.core.models import Model, model, simple_model
from docmodel.core.provisioning import SetupOrchestrator
from docmodel.core.query import expr as q
from docmodel.core.query.indexes import IndexManager
from docmodel.core.relations import ModelRegistry, RelationDefinition, RelationManager
from docmodel.core.schemas import (
    DefinedSchema,
    DocumentMeta,
    IndexDefinition,
    IndexValue,
    MetaSchema,
    Page,
    PaginateOptions,
    RawDocument,
    Ref,
)

__version__ = "0.1.0"

__all__ = [
    "BuiltDocument",
    "Client",
    "ConfigurationError",
    "CountMismatchError",
    "DefinedSchema",
    "DocModelError",
    "DocumentMeta",
    "ExistenceError",
    "Executor",
    "IndexDefinition",
    "IndexManager",
    "IndexValue",
    "MetaSchema",
    "Model",
    "ModelRegistry",
    "Outcome",
    "Page",
    "PaginateOptions",
    "RawDocument",
    "Ref",
    "RelationDefinition",
    "RelationManager",
    "SetupOrchestrator",
    "TransportError",
    "ValidationError",
    "model",
    "q",
    "simple_model",
]
