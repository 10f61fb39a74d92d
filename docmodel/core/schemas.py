import time
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from docmodel.core.errors import ValidationError


# =========================
# References / envelopes
# =========================
class Ref(BaseModel):
    """Identity of a document, collection, index or database."""

    id: str
    collection: Optional["Ref"] = None
    database: Optional["Ref"] = None

    model_config = ConfigDict(frozen=True)

    def __str__(self):
        if self.collection is None:
            return self.id
        return f"{self.collection}/{self.id}"


class RawDocument(BaseModel):
    """A document as returned by the execution collaborator (not validated)."""

    ref: Ref
    ts: int
    data: Any = None
    ttl: Optional[Any] = None


class PaginateOptions(BaseModel):
    size: int = 100
    after: Optional[Any] = None
    before: Optional[Any] = None


T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    data: List[T] = []
    after: Optional[Any] = None
    before: Optional[Any] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


# =========================
# Index definitions
# =========================
# A field path: "data.email", ["data", "email"] or lambda doc: doc.data.email
FieldPath = Union[str, Sequence[str], Callable[[Any], Any]]


class IndexValue(BaseModel):
    field: FieldPath
    reverse: bool = False

    model_config = ConfigDict(arbitrary_types_allowed=True)


class IndexDefinition(BaseModel):
    unique: bool = False
    terms: List[FieldPath] = []
    values: List[IndexValue] = []
    serialized: Optional[bool] = None
    data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


# =========================
# Document meta block
# =========================
def _now_ms() -> int:
    return int(time.time() * 1000)


class DocumentMeta(BaseModel):
    version: str = "1"
    created_at: int = Field(default_factory=_now_ms)
    updated_at: int = Field(default_factory=_now_ms)


class MetaSchema(BaseModel):
    """Mixin for schemas that carry a `meta` bookkeeping block."""

    meta: DocumentMeta = Field(default_factory=DocumentMeta)


# =========================
# Defined schema
# =========================
S = TypeVar("S", bound=BaseModel)


def _issues(error: PydanticValidationError) -> List[tuple]:
    return [
        (".".join(str(part) for part in err["loc"]) or "<root>", err["msg"])
        for err in error.errors()
    ]


class DefinedSchema(Generic[S]):
    """
    Declared shape of a model's documents.

    The input shape is what pydantic accepts before defaults and coercion,
    the output shape is the validated model instance. `parse` is the single
    conversion between them.

    Example:
        class User(BaseModel):
            email: str
            tags: List[str] = []

        schema = DefinedSchema(User)
        user = schema.parse_sync({"email": "a@b.c"})  # User(email="a@b.c", tags=[])
    """

    def __init__(self, schema: Type[S]):
        self.schema = schema
        self.array_schema = TypeAdapter(List[schema])

    def input_json_schema(self) -> Dict[str, Any]:
        return self.schema.model_json_schema(mode="validation")

    def output_json_schema(self) -> Dict[str, Any]:
        shape = self.schema.model_json_schema(mode="serialization")
        # Built values always carry every declared field
        shape["required"] = list(shape.get("properties", {}))
        return shape

    def parse_sync(self, inp: Any, operation: Optional[str] = None, target: Any = None) -> S:
        if isinstance(inp, self.schema):
            inp = inp.model_dump()
        try:
            return self.schema.model_validate(inp)
        except PydanticValidationError as error:
            raise ValidationError(
                operation or f"parse:{self.schema.__name__}", _issues(error), target
            ) from error

    async def parse(self, inp: Any, operation: Optional[str] = None, target: Any = None) -> S:
        return self.parse_sync(inp, operation, target)

    def parse_bulk_sync(
        self, inp: Sequence[Any], operation: Optional[str] = None, target: Any = None
    ) -> List[S]:
        items = [i.model_dump() if isinstance(i, self.schema) else i for i in inp]
        try:
            return self.array_schema.validate_python(items)
        except PydanticValidationError as error:
            raise ValidationError(
                operation or f"parse_bulk:{self.schema.__name__}", _issues(error), target
            ) from error

    async def parse_bulk(
        self, inp: Sequence[Any], operation: Optional[str] = None, target: Any = None
    ) -> List[S]:
        return self.parse_bulk_sync(inp, operation, target)

    def __repr__(self):
        return f"DefinedSchema({self.schema.__name__})"
