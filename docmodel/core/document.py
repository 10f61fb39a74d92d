import copy
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from pydantic import BaseModel

from docmodel.core.schemas import RawDocument, Ref
from docmodel.core.utils import deep_merge

if TYPE_CHECKING:
    from docmodel.core.models import Model


class BuiltDocument:
    """
    A validated document: the schema's output value plus the stored envelope.

    `build_update*` only compute a candidate value; `pick_update`, `replace`
    and `delete` persist through the owning model.
    """

    def __init__(self, model: "Model", raw: RawDocument, data: BaseModel):
        self.model = model
        self.raw = raw
        self.data = data
        self.ref: Ref = raw.ref
        self.id: str = raw.ref.id
        self.ts: int = raw.ts
        self.ttl: Optional[Any] = raw.ttl
        self.meta: Dict[str, Any] = {}

    def serialize(self) -> Dict[str, Any]:
        """`{"id": ..., **data}` as an independent copy."""
        return {"id": self.id, **copy.deepcopy(self.data.model_dump())}

    def _merged(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        # Lists in `data` replace stored lists, they are never concatenated
        return deep_merge(self.data.model_dump(), data)

    async def build_update(self, data: Mapping[str, Any]) -> BaseModel:
        """Validated merge of `data` into this document. Nothing is written."""
        return await self.model.build(self._merged(data), "build_update", self.id)

    def build_update_sync(self, data: Mapping[str, Any]) -> BaseModel:
        return self.model.build_sync(self._merged(data), "build_update", self.id)

    async def pick_update(self, data: Mapping[str, Any]) -> Optional["BuiltDocument"]:
        """Merge `data` into this document and persist the result."""
        merged = await self.build_update(data)
        return await self.model.update(self.id, merged)

    async def replace(self, data: Any) -> Optional["BuiltDocument"]:
        """Validate `data` and replace the whole stored value with it."""
        replacement = await self.model.build(data, "replace", self.id)
        return await self.model.replace(self.id, replacement)

    async def delete(self) -> Optional["BuiltDocument"]:
        return await self.model.delete(self.id)

    async def refresh(self) -> Optional["BuiltDocument"]:
        """A fresh copy of this document, or None if it was deleted."""
        return await self.model.get(self.id)

    def __repr__(self):
        return f"BuiltDocument({self.model.name}/{self.id})"
