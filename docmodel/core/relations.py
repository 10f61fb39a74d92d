from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict

from docmodel.core.errors import ConfigurationError
from docmodel.core.query.paths import resolve_path
from docmodel.core.schemas import FieldPath

if TYPE_CHECKING:
    from docmodel.core.models import Model


# A related model: a model name, a list of names, or a thunk returning model(s)
RelatedTarget = Union[str, List[str], Callable[[], Any]]


class RelationDefinition(BaseModel):
    field: FieldPath
    related_model: RelatedTarget

    model_config = ConfigDict(arbitrary_types_allowed=True)


class RelationManager:
    """
    Named relations of one model.

    Targets are kept deferred (a name or a thunk) so models can refer to each
    other regardless of definition order. Loading related documents is not
    done here; `related_model()` only tells which model(s) a relation points
    to.
    """

    def __init__(self, relations: Optional[Mapping[str, Union[RelationDefinition, dict]]] = None):
        self.relations: Dict[str, RelationDefinition] = {
            name: r if isinstance(r, RelationDefinition) else RelationDefinition(**r)
            for name, r in (relations or {}).items()
        }
        self._resolved: Dict[str, Any] = {}

    def names(self) -> List[str]:
        return list(self.relations)

    def get_relation(self, name: str) -> RelationDefinition:
        try:
            return self.relations[name]
        except KeyError:
            raise ConfigurationError("get_relation", name, "no relation with this name is defined")

    def field_path(self, name: str) -> List[str]:
        return resolve_path(self.get_relation(name).field)

    def bind(self, name: str, target: Any):
        self._resolved[name] = target

    def related_model(self, name: str) -> Union["Model", List["Model"]]:
        """Return the model(s) a relation points to."""
        definition = self.get_relation(name)
        if name in self._resolved:
            return self._resolved[name]
        if callable(definition.related_model):
            return definition.related_model()
        raise ConfigurationError(
            "related_model",
            name,
            "relation target is a model name; resolve it through a ModelRegistry first",
        )


class ModelRegistry:
    """
    Two-phase model registry.

    Phase 1: register() every model by name, nothing is resolved.
    Phase 2: resolve() once all models exist; relation targets given by name
    are looked up and bound to their relation manager.
    """

    def __init__(self):
        self.models: Dict[str, "Model"] = {}

    def register(self, *models: "Model") -> "ModelRegistry":
        for model in models:
            if model.name in self.models and self.models[model.name] is not model:
                raise ConfigurationError("register", model.name, "a different model already uses this name")
            self.models[model.name] = model
        return self

    def get(self, name: str) -> "Model":
        try:
            return self.models[name]
        except KeyError:
            raise ConfigurationError("registry.get", name, "no model registered under this name")

    def resolve(self) -> "ModelRegistry":
        for model in self.models.values():
            relations = model.relation
            for name, definition in relations.relations.items():
                target = definition.related_model
                if isinstance(target, str):
                    relations.bind(name, self.get(target))
                elif isinstance(target, list):
                    relations.bind(name, [self.get(t) for t in target])
        return self
