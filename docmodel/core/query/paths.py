from typing import Any, List, Optional, Type, get_args, get_origin

from pydantic import BaseModel

from docmodel.core.errors import ConfigurationError
from docmodel.core.schemas import FieldPath


# Top level keys of a stored document envelope
ENVELOPE_FIELDS = ("ref", "ts", "ttl", "data")


class PathRecorder:
    """
    Stand-in value that records every key an accessor reads.

    Each attribute or item access appends the key to a shared list and returns
    a fresh recorder, so chained accesses compose. No real data is read.

    Example:
        keys = []
        (lambda doc: doc.data.address["city"])(PathRecorder(keys))
        keys -> ["data", "address", "city"]
    """

    __slots__ = ("_keys",)

    def __init__(self, keys: List[str]):
        object.__setattr__(self, "_keys", keys)

    def __getattr__(self, key: str) -> "PathRecorder":
        if key.startswith("__") and key.endswith("__"):
            raise AttributeError(key)
        self._keys.append(key)
        return PathRecorder(self._keys)

    def __getitem__(self, key: Any) -> "PathRecorder":
        self._keys.append(str(key))
        return PathRecorder(self._keys)

    def __setattr__(self, key, value):
        raise TypeError("PathRecorder is read-only")


def record_path(accessor) -> List[str]:
    """Replay an accessor once against a recorder and return the keys it read."""
    keys: List[str] = []
    accessor(PathRecorder(keys))
    return keys


def resolve_path(path: FieldPath) -> List[str]:
    """Turn a dotted string, a key list or an accessor into a key list."""
    if callable(path):
        keys = record_path(path)
    elif isinstance(path, str):
        keys = path.split(".")
    else:
        keys = [str(key) for key in path]

    if not keys or any(key == "" for key in keys):
        raise ConfigurationError("resolve_path", path, "path must contain at least one key")
    return keys


def _unwrap_model(annotation: Any) -> Optional[Type[BaseModel]]:
    """Return the pydantic model behind an annotation (Optional[...] included)."""
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return annotation
    if get_origin(annotation) is not None:
        models = [arg for arg in get_args(annotation) if isinstance(arg, type) and issubclass(arg, BaseModel)]
        if len(models) == 1 and get_origin(annotation) not in (list, tuple, set, dict):
            return models[0]
    return None


def validate_path(schema: Type[BaseModel], keys: List[str], owner: str = "") -> None:
    """
    Check a resolved path against the document envelope and the schema.

    Paths outside `data` must name an envelope field. Inside `data` each key
    must be a declared field while the walk stays inside pydantic models; once
    it reaches a free-form value (dict, list, Any) the rest is accepted.
    """
    if keys[0] not in ENVELOPE_FIELDS:
        raise ConfigurationError(
            "validate_path",
            owner or ".".join(keys),
            f"'{keys[0]}' is not a document field (expected one of {ENVELOPE_FIELDS})",
        )
    if keys[0] != "data":
        return

    current: Optional[Type[BaseModel]] = schema
    for position, key in enumerate(keys[1:], start=1):
        if current is None:
            return
        fields = current.model_fields
        if key not in fields:
            raise ConfigurationError(
                "validate_path",
                owner or ".".join(keys),
                f"'{'.'.join(keys[: position + 1])}' is not declared on {current.__name__}",
            )
        current = _unwrap_model(fields[key].annotation)
