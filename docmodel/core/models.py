import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Type, Union

from pydantic import BaseModel

from docmodel.core.database import Executor, Outcome
from docmodel.core.document import BuiltDocument
from docmodel.core.errors import (
    ConfigurationError,
    CountMismatchError,
    ExistenceError,
    TransportError,
)
from docmodel.core.logs import LogContext
from docmodel.core.query import expr as q
from docmodel.core.query.indexes import IndexManager
from docmodel.core.relations import RelationManager
from docmodel.core.schemas import DefinedSchema, Page, PaginateOptions, RawDocument, Ref


# A document identity: a bare id in the model's own collection, or a full Ref
Id = Union[str, Ref]


def _dump(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, Mapping):
        return dict(data)
    return data


def _drop_missing(results: Optional[Iterable[Any]]) -> List[Any]:
    return [r for r in (results or []) if r is not None]


class Model:
    """
    One collection: its schema, indexes and relations, plus every query the
    collection supports.

    Each operation compiles a single expression (one `let` binding everything
    it needs) and runs it with one call to `execute`. Operations on existing
    documents check existence first and resolve to None when the document is
    missing, except `delete` which aborts.

    Example:
        users = model("user", User, indexes={"by_email": {"terms": ["data.email"], "unique": True}})
        await client.init([users], setup=True)
        doc = await users.create({"email": "a@b.c"})
        same = await users.get_first_by_index("by_email", "a@b.c")
    """

    def __init__(
        self,
        name: str,
        defined_schema: Union[DefinedSchema, Type[BaseModel]],
        index: Optional[IndexManager] = None,
        relation: Optional[RelationManager] = None,
    ):
        if not isinstance(defined_schema, DefinedSchema):
            defined_schema = DefinedSchema(defined_schema)

        self.name = name
        self.defined_schema = defined_schema
        self.index = index or IndexManager()
        self.relation = relation or RelationManager()
        self.client: Optional[Executor] = None
        self.log = LogContext(f"docmodel:model:{name}", {"name": name})

        self.index.set_model(self)

    # =========================
    # Internal helpers
    # =========================
    def set_client(self, client: Executor):
        self.client = client

    def coll(self) -> q.Expr:
        return q.collection(self.name)

    def ref(self, id: Id) -> q.Expr:
        """Resolve a bare id or a qualified Ref into a Ref() expression."""
        if isinstance(id, str):
            return q.ref(self.coll(), id)

        if id.collection is None:
            return q.ref(self.coll(), id.id)

        collection = id.collection
        scope = q.database(collection.database.id) if collection.database is not None else None
        return q.ref(q.collection(collection.id, scope), id.id)

    def create_collection_query(self) -> q.Expr:
        return q.create_collection(
            {"name": self.name, "data": {}, "history_days": None, "ttl_days": None}
        )

    # =========================
    # Building
    # =========================
    async def build(self, inp: Any, operation: str = "build", target: Any = None) -> BaseModel:
        """Validate input into the schema's output shape (defaults applied)."""
        return await self.defined_schema.parse(inp, operation, target or self.name)

    async def build_bulk(
        self, inp: Sequence[Any], operation: str = "build_bulk", target: Any = None
    ) -> List[BaseModel]:
        return await self.defined_schema.parse_bulk(inp, operation, target or self.name)

    def build_sync(self, inp: Any, operation: str = "build", target: Any = None) -> BaseModel:
        return self.defined_schema.parse_sync(inp, operation, target or self.name)

    def build_bulk_sync(
        self, inp: Sequence[Any], operation: str = "build_bulk", target: Any = None
    ) -> List[BaseModel]:
        return self.defined_schema.parse_bulk_sync(inp, operation, target or self.name)

    async def build_doc(self, raw: Union[RawDocument, Mapping[str, Any]]) -> BuiltDocument:
        raw = raw if isinstance(raw, RawDocument) else RawDocument.model_validate(raw)
        data = await self.build(raw.data, "build_doc", str(raw.ref))
        return BuiltDocument(self, raw, data)

    def build_doc_sync(self, raw: Union[RawDocument, Mapping[str, Any]]) -> BuiltDocument:
        raw = raw if isinstance(raw, RawDocument) else RawDocument.model_validate(raw)
        return BuiltDocument(self, raw, self.build_sync(raw.data, "build_doc", str(raw.ref)))

    async def build_bulk_docs(self, raws: Iterable[Any]) -> List[BuiltDocument]:
        return [await self.build_doc(raw) for raw in raws]

    def build_bulk_docs_sync(self, raws: Iterable[Any]) -> List[BuiltDocument]:
        return [self.build_doc_sync(raw) for raw in raws]

    async def build_map_result(self, result: Mapping[str, Any]) -> Page:
        return Page(
            data=await self.build_bulk_docs(result.get("data") or []),
            after=result.get("after") or None,
            before=result.get("before") or None,
        )

    # =========================
    # Reads
    # =========================
    async def get(self, id: Id) -> Optional[BuiltDocument]:
        """Fetch one document, or None when it does not exist."""
        query = q.let(
            {
                "ref": self.ref(id),
                "exists": q.exists(q.var("ref")),
                "doc": q.if_(q.var("exists"), q.get(q.var("ref")), None),
            },
            q.var("doc"),
        )
        self.log.debug(f"Retrieving document by id: {id}")
        raw = await self.execute(query, operation="get", target=id)

        if not raw:
            return None
        return await self.build_doc(raw)

    async def get_or_throw(self, id: Id) -> BuiltDocument:
        doc = await self.get(id)
        if doc is None:
            raise ExistenceError("get_or_throw", id, f"expected a document in '{self.name}'")
        return doc

    async def get_many(self, ids: Sequence[Id]) -> List[BuiltDocument]:
        """Fetch many documents; ids without a document are left out."""
        query = q.let(
            {
                "refs": [self.ref(i) for i in ids],
                "docs": q.map_(
                    q.var("refs"),
                    q.lambda_(
                        "ref",
                        q.if_(q.exists(q.var("ref")), q.get(q.var("ref")), None),
                    ),
                ),
            },
            q.var("docs"),
        )
        self.log.debug(f"Retrieving a total of {len(ids)} documents")
        raws = await self.execute(query, operation="get_many", target=list(ids))
        return await self.build_bulk_docs(_drop_missing(raws))

    async def get_many_or_throw(self, ids: Sequence[Id]) -> List[BuiltDocument]:
        docs = await self.get_many(ids)
        if len(docs) != len(ids):
            raise CountMismatchError("get_many_or_throw", len(ids), len(docs), target=self.name)
        return docs

    async def list(
        self, size: int = 100, after: Any = None, before: Any = None
    ) -> Page:
        """One page of the collection in the engine's document order."""
        query = q.let(
            {
                "size": size,
                "result": q.map_(
                    q.paginate(
                        q.documents(self.coll()),
                        size=q.var("size"),
                        after=after,
                        before=before,
                    ),
                    q.lambda_("ref", q.get(q.var("ref"))),
                ),
            },
            q.var("result"),
        )
        result = await self.execute(query, operation="list", target=self.name)
        return await self.build_map_result(result or {})

    async def count(self, max_docs: int = 10000) -> int:
        """Number of documents, capped at max_docs."""
        query = q.let(
            {
                "max_docs": max_docs,
                "result": q.count(
                    q.paginate(q.documents(self.coll()), size=q.var("max_docs"))
                ),
                "counted": q.select(["data", 0], q.var("result")),
            },
            q.var("counted"),
        )
        return await self.execute(query, operation="count", target=self.name)

    def paginate(self, size: int = 100, after: Any = None, before: Any = None) -> PaginateOptions:
        return PaginateOptions(size=size, after=after, before=before)

    def _entry_ref(self, index_name: str, entry: q.Expr) -> Any:
        # Value-bearing indexes return tuples that end with the document ref
        position = self.index.ref_position(index_name)
        return entry if position is None else q.select([position], entry)

    async def get_first_by_index(self, index_name: str, *terms: Any) -> Optional[BuiltDocument]:
        query = q.let(
            {
                "matched": self.index.match(index_name, *terms),
                "found": q.if_(
                    q.exists(q.var("matched")),
                    q.get(
                        self._entry_ref(
                            index_name,
                            q.select(["data", 0], q.paginate(q.var("matched"), size=1)),
                        )
                    ),
                    None,
                ),
            },
            q.var("found"),
        )
        raw = await self.execute(query, operation="get_first_by_index", target=index_name)

        if not raw:
            return None
        return await self.build_doc(raw)

    async def list_by_index(
        self,
        index_name: str,
        terms: Sequence[Any],
        pagination: Union[PaginateOptions, Mapping[str, Any], None] = None,
    ) -> Page:
        if not isinstance(pagination, PaginateOptions):
            pagination = PaginateOptions(**(pagination or {}))

        query = q.let(
            {
                "matched": self.index.match(index_name, *terms),
                "listed": q.map_(
                    q.paginate(
                        q.var("matched"),
                        size=pagination.size,
                        after=pagination.after,
                        before=pagination.before,
                    ),
                    q.lambda_("entry", q.get(self._entry_ref(index_name, q.var("entry")))),
                ),
            },
            q.var("listed"),
        )
        result = await self.execute(query, operation="list_by_index", target=index_name)
        return await self.build_map_result(result or {})

    # =========================
    # Writes
    # =========================
    async def create(self, data: Any, ttl: Any = None) -> BuiltDocument:
        """Validate and create a document; the database assigns the id."""
        built = await self.build(data, "create")
        params: Dict[str, Any] = {"data": q.var("data")}
        if ttl is not None:
            params["ttl"] = ttl

        query = q.let(
            {"data": _dump(built), "doc": q.create(self.coll(), params)},
            q.var("doc"),
        )
        raw = await self.execute(query, operation="create", target=self.name)
        return await self.build_doc(raw)

    async def create_many(self, items: Sequence[Any]) -> List[BuiltDocument]:
        """Validate every item (all or nothing), then create them in one query."""
        built = await self.build_bulk(items, "create_many")
        query = q.let(
            {
                "docs": [_dump(b) for b in built],
                "created": q.map_(
                    q.var("docs"),
                    q.lambda_("data", q.create(self.coll(), {"data": q.var("data")})),
                ),
            },
            q.var("created"),
        )
        raws = await self.execute(query, operation="create_many", target=self.name)
        return await self.build_bulk_docs(raws or [])

    def _pairs(self, items: Iterable[Any]) -> List[Dict[str, Any]]:
        pairs = []
        for item in items:
            if isinstance(item, Mapping):
                id, data = item["id"], item["data"]
            else:
                id, data = item
            pairs.append({"ref": self.ref(id), "data": _dump(data)})
        return pairs

    def _guarded_write(self, write, ref_expr: Any, data: Any) -> Dict[str, Any]:
        return {
            "ref": ref_expr,
            "exists": q.exists(q.var("ref")),
            "data": data,
            "result": q.if_(
                q.var("exists"), write(q.var("ref"), {"data": q.var("data")}), None
            ),
        }

    def _guarded_bulk_write(self, write, items: Iterable[Any]) -> q.Expr:
        return q.let(
            {
                "docs": self._pairs(items),
                "results": q.map_(
                    q.var("docs"),
                    q.lambda_(
                        "doc",
                        q.let(
                            self._guarded_write(
                                write,
                                q.select("ref", q.var("doc")),
                                q.select("data", q.var("doc")),
                            ),
                            q.var("result"),
                        ),
                    ),
                ),
            },
            q.var("results"),
        )

    async def update(self, id: Id, data: Any) -> Optional[BuiltDocument]:
        """Write `data` onto an existing document; None when it does not exist."""
        query = q.let(self._guarded_write(q.update, self.ref(id), _dump(data)), q.var("result"))
        raw = await self.execute(query, operation="update", target=id)

        if not raw:
            return None
        return await self.build_doc(raw)

    async def update_many(self, items: Iterable[Any]) -> List[BuiltDocument]:
        """Update (id, data) pairs; missing documents are skipped."""
        raws = await self.execute(
            self._guarded_bulk_write(q.update, items), operation="update_many", target=self.name
        )
        return await self.build_bulk_docs(_drop_missing(raws))

    async def replace(self, id: Id, data: Any) -> Optional[BuiltDocument]:
        """
        Replace the stored value entirely: fields missing from `data` are
        removed. None when the document does not exist.
        """
        query = q.let(self._guarded_write(q.replace, self.ref(id), _dump(data)), q.var("result"))
        raw = await self.execute(query, operation="replace", target=id)

        if not raw:
            return None
        return await self.build_doc(raw)

    async def replace_many(self, items: Iterable[Any]) -> List[BuiltDocument]:
        raws = await self.execute(
            self._guarded_bulk_write(q.replace, items), operation="replace_many", target=self.name
        )
        return await self.build_bulk_docs(_drop_missing(raws))

    async def delete(self, id: Id) -> Optional[BuiltDocument]:
        """Delete a document. Aborts (TransportError) when it does not exist."""
        query = q.let(
            {
                "ref": self.ref(id),
                "exists": q.exists(q.var("ref")),
                "deleted": q.if_(
                    q.var("exists"),
                    q.delete(q.var("ref")),
                    q.abort("No document to delete!"),
                ),
            },
            q.var("deleted"),
        )
        raw = await self.execute(query, operation="delete", target=id)

        if not raw:
            return None
        return await self.build_doc(raw)

    async def del_many(self, ids: Sequence[Id]) -> List[BuiltDocument]:
        """Delete many documents; ids without a document are skipped."""
        query = q.let(
            {
                "refs": [self.ref(i) for i in ids],
                "deleted": q.map_(
                    q.var("refs"),
                    q.lambda_(
                        "ref",
                        q.if_(q.exists(q.var("ref")), q.delete(q.var("ref")), None),
                    ),
                ),
            },
            q.var("deleted"),
        )
        raws = await self.execute(query, operation="del_many", target=list(ids))
        return await self.build_bulk_docs(_drop_missing(raws))

    # =========================
    # Execution
    # =========================
    async def execute(
        self,
        query: q.Expr,
        query_options: Optional[Dict[str, Any]] = None,
        with_metrics: bool = False,
        error_on_failure: bool = True,
        operation: str = "execute",
        target: Any = None,
    ) -> Any:
        """
        Run one expression through the bound client.

        Failures are raised as TransportError by default. With
        `error_on_failure=False` an Outcome is returned instead, carrying
        either the value or the error.
        """
        if self.client is None:
            raise ConfigurationError(
                operation, self.name, "attempted to execute a query before a client was set"
            )

        self.log.debug(
            f"Executing query. With metrics: {with_metrics}, error on failure: {error_on_failure}",
            {"operation": operation, "query_options": query_options, "raw_query": query.to_wire()},
        )

        metrics: Dict[str, Any] = {}
        monitor = self.log.monitor(operation, {"target": str(target)}) if with_metrics else None
        try:
            if with_metrics:
                result, metrics = await self.client.query_with_metrics(query, query_options or {})
            else:
                result = await self.client.query(query, query_options or {})
        except Exception as error:
            if monitor is not None:
                monitor.finished()
                monitor.meta["error"] = str(error)
            failure = TransportError(
                operation,
                str(error),
                target=target,
                cause=error,
                status_code=getattr(error, "status_code", None),
                errors=getattr(error, "errors", None),
            )
            self.log.error(
                "An error occurred while executing the query",
                {"operation": operation, "target": str(target), "error": str(error)},
            )
            if error_on_failure:
                raise failure from error
            return Outcome(error=failure)

        if monitor is not None:
            monitor.finished()
            monitor.meta.update(metrics)
            self.log.debug("Query metrics", {"operation": operation, "metrics": metrics})

        self.log.debug("Response for query", {"operation": operation, "response": repr(result)})

        if not error_on_failure:
            return Outcome(value=result, metrics=metrics)
        return result

    # =========================
    # Representation
    # =========================
    def __repr__(self) -> str:
        return f'[Model: "{self.name}"]'

    def to_json(self) -> str:
        return json.dumps({"model": self.name})


def simple_model(name: str, schema: Union[DefinedSchema, Type[BaseModel]]) -> Model:
    """A model without indexes or relations."""
    return Model(name, schema, IndexManager(), RelationManager())


def model(
    name: str,
    schema: Union[DefinedSchema, Type[BaseModel]],
    indexes: Optional[Mapping[str, Any]] = None,
    relations: Optional[Mapping[str, Any]] = None,
) -> Model:
    return Model(name, schema, IndexManager(indexes or {}), RelationManager(relations or {}))
