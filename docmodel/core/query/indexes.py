"""
INDEX MANAGER - Secondary index definitions for one model

Purpose:
    1. Hold the model's named index definitions
    2. Resolve term/value paths (dotted strings, key lists or accessors)
    3. Compile index creation expressions, idempotent per index
    4. Compile Match() expressions for lookups

Why:
    Callers describe an index once, next to the schema, and never write FQL
    paths or index names by hand. Index full names are always
    "<model>-<index>".
"""

from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union

from docmodel.core.errors import ConfigurationError
from docmodel.core.query import expr as q
from docmodel.core.query.paths import resolve_path, validate_path
from docmodel.core.schemas import IndexDefinition

if TYPE_CHECKING:
    from docmodel.core.models import Model


class IndexManager:
    def __init__(self, definitions: Optional[Mapping[str, Union[IndexDefinition, dict]]] = None):
        self.definitions: Dict[str, IndexDefinition] = {
            name: d if isinstance(d, IndexDefinition) else IndexDefinition(**d)
            for name, d in (definitions or {}).items()
        }
        self.model: Optional["Model"] = None

    def set_model(self, model: "Model"):
        """Bind the manager to its model and check every path against the schema."""
        self.model = model
        for name, definition in self.definitions.items():
            owner = f"{model.name}-{name}"
            for path in definition.terms:
                validate_path(model.defined_schema.schema, resolve_path(path), owner)
            for value in definition.values:
                validate_path(model.defined_schema.schema, resolve_path(value.field), owner)

    def get(self, name: str) -> IndexDefinition:
        try:
            return self.definitions[name]
        except KeyError:
            raise ConfigurationError("index.get", name, "no index with this name is defined")

    def names(self) -> List[str]:
        return list(self.definitions)

    def full_index_name(self, name: str) -> str:
        if self.model is None:
            raise ConfigurationError(
                "full_index_name",
                name,
                "attempted to retrieve the full index name before a model was set",
            )
        return f"{self.model.name}-{name}"

    def term_paths(self, name: str) -> List[List[str]]:
        return [resolve_path(path) for path in self.get(name).terms]

    def value_fields(self, name: str) -> List[Dict[str, Any]]:
        return [
            {"field": resolve_path(value.field), "reverse": value.reverse}
            for value in self.get(name).values
        ]

    def ref_position(self, name: str) -> Optional[int]:
        """
        Where the document ref sits in each entry the index returns.

        None when the index declares no values (entries are refs). Otherwise
        entries are value tuples and the ref is appended as the last value.
        """
        values = self.get(name).values
        return len(values) if values else None

    def create_index(self, name: str, collection_expr: Any) -> q.Expr:
        """Compile the CreateIndex() expression for one definition."""
        full_name = self.full_index_name(name)
        definition = self.get(name)

        values = self.value_fields(name)
        if values:
            # Lookups read the document back through this trailing ref
            values.append({"field": ["ref"], "reverse": False})

        params: Dict[str, Any] = {
            "name": full_name,
            "source": collection_expr,
            "terms": [{"field": path} for path in self.term_paths(name)],
            "values": values,
            "unique": definition.unique,
        }
        if definition.serialized is not None:
            params["serialized"] = definition.serialized
        if definition.data is not None:
            params["data"] = definition.data

        return q.create_index(params)

    def create_queries(self, collection_expr: Any) -> List[q.Expr]:
        """
        One idempotent creation expression per index.

        Each expression checks whether an index with the full name exists and
        only creates it when it does not, so it is safe to run on every start.
        """
        queries = []
        for name in self.definitions:
            queries.append(
                q.let(
                    {
                        "name": self.full_index_name(name),
                        "exists": q.exists(q.index(q.var("name"))),
                        "created_index": q.if_(
                            q.var("exists"),
                            None,
                            self.create_index(name, collection_expr),
                        ),
                    },
                    q.var("created_index"),
                )
            )
        return queries

    def match(self, index_name: str, *terms: Any) -> q.Expr:
        """Compile a Match() on the index. Pure: nothing is executed."""
        self.get(index_name)
        return q.match(q.index(self.full_index_name(index_name)), *terms)
