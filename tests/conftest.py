import asyncio
import copy
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from pydantic import BaseModel

from docmodel import SetupOrchestrator, model
from docmodel.core.query.expr import Expr
from docmodel.core.schemas import Ref


COLLECTIONS = Ref(id="collections")
INDEXES = Ref(id="indexes")


class AbortError(Exception):
    """Raised by the in-memory engine for Abort() and invalid operations."""


class Closure:
    def __init__(self, param: str, body: Any, env: Dict[str, Any]):
        self.param = param
        self.body = body
        self.env = env


class DocumentSet:
    """Result of Documents() or Match(): refs, or value tuples for indexes with values."""

    def __init__(self, entries: List[Any]):
        self.entries = entries


def merge_data(base: Any, update: Any) -> Any:
    # Update() semantics: objects merge, null removes a field, anything else replaces
    if not isinstance(base, dict) or not isinstance(update, dict):
        return copy.deepcopy(update)
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = merge_data(merged.get(key), value)
    return merged


class MemoryEngine:
    """
    In-memory execution collaborator that evaluates docmodel expression trees.

    It records every submitted query (`calls`) and the submit/resolve order
    of each one (`events`).
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self.indexes: Dict[str, dict] = {}
        self.calls: List[Expr] = []
        self.events: List[tuple] = []
        self._next_id = 100
        self._ts = 1

    # =========================
    # Executor contract
    # =========================
    async def query(self, expr: Expr, options: Optional[dict] = None) -> Any:
        self.calls.append(expr)
        number = len(self.calls)
        self.events.append(("submitted", number))
        await asyncio.sleep(0)
        result = self.evaluate(expr, {})
        self.events.append(("resolved", number))
        return result

    async def query_with_metrics(self, expr: Expr, options: Optional[dict] = None):
        result = await self.query(expr, options)
        return result, {"x-compute-ops": "1", "x-read-ops": "1"}

    # =========================
    # Helpers for tests
    # =========================
    def insert(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        coll_ref = Ref(id=collection, collection=COLLECTIONS)
        self.collections.setdefault(collection, {})
        doc_id = doc_id or self._new_id()
        self.collections[collection][doc_id] = {
            "ref": Ref(id=doc_id, collection=coll_ref),
            "ts": self._tick(),
            "data": copy.deepcopy(data),
        }
        return doc_id

    def stored(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self.collections.get(collection, {}).get(doc_id)
        return None if doc is None else doc["data"]

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    def _tick(self) -> int:
        self._ts += 1
        return self._ts

    # =========================
    # Evaluation
    # =========================
    def evaluate(self, value: Any, env: Dict[str, Any]) -> Any:
        if isinstance(value, Expr):
            return getattr(self, f"_op_{value.op}")(value.args, env)
        if isinstance(value, BaseModel) and not isinstance(value, Ref):
            return value.model_dump(mode="json")
        if isinstance(value, dict):
            return {k: self.evaluate(v, env) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.evaluate(v, env) for v in value]
        return value

    def _apply(self, func: Closure, arg: Any) -> Any:
        return self.evaluate(func.body, {**func.env, func.param: arg})

    def _op_let(self, args, env):
        scope = dict(env)
        for name, value in args["let"].items():
            scope[name] = self.evaluate(value, scope)
        return self.evaluate(args["in"], scope)

    def _op_var(self, args, env):
        return env[args["var"]]

    def _op_if(self, args, env):
        if self.evaluate(args["if"], env):
            return self.evaluate(args["then"], env)
        return self.evaluate(args["else"], env)

    def _op_do(self, args, env):
        result = None
        for expr in args["do"]:
            result = self.evaluate(expr, env)
        return result

    def _op_abort(self, args, env):
        raise AbortError(args["abort"])

    def _op_lambda(self, args, env):
        return Closure(args["lambda"], args["expr"], env)

    def _op_map(self, args, env):
        func = self.evaluate(args["map"], env)
        source = self.evaluate(args["collection"], env)
        if isinstance(source, dict):
            return {**source, "data": [self._apply(func, item) for item in source["data"]]}
        return [self._apply(func, item) for item in source]

    def _op_select(self, args, env):
        current = self.evaluate(args["from"], env)
        for key in args["select"]:
            try:
                current = current[key]
            except (KeyError, IndexError, TypeError):
                if "default" in args:
                    return self.evaluate(args["default"], env)
                raise AbortError(f"value not found at path {args['select']}")
        return current

    def _op_database(self, args, env):
        return Ref(id=args["database"], collection=Ref(id="databases"))

    def _op_collection(self, args, env):
        return Ref(id=self.evaluate(args["collection"], env), collection=COLLECTIONS)

    def _op_index(self, args, env):
        return Ref(id=self.evaluate(args["index"], env), collection=INDEXES)

    def _op_ref(self, args, env):
        return Ref(id=self.evaluate(args["id"], env), collection=self.evaluate(args["ref"], env))

    def _op_documents(self, args, env):
        coll = self.evaluate(args["documents"], env)
        docs = self.collections.get(coll.id, {})
        return DocumentSet([doc["ref"] for doc in docs.values()])

    def _find(self, ref: Ref) -> Optional[dict]:
        return self.collections.get(ref.collection.id, {}).get(ref.id)

    def _op_exists(self, args, env):
        target = self.evaluate(args["exists"], env)
        if isinstance(target, DocumentSet):
            return bool(target.entries)
        if target.collection == COLLECTIONS:
            return target.id in self.collections
        if target.collection == INDEXES:
            return target.id in self.indexes
        return self._find(target) is not None

    def _op_get(self, args, env):
        target = self.evaluate(args["get"], env)
        if isinstance(target, DocumentSet):
            if not target.entries:
                raise AbortError("set is empty")
            target = target.entries[0]
        if not isinstance(target, Ref):
            raise AbortError(f"cannot Get() a non-reference value {target!r}")
        doc = self._find(target)
        if doc is None:
            raise AbortError(f"document {target} not found")
        return copy.deepcopy(doc)

    def _field(self, doc: dict, path: List[str]) -> Any:
        current: Any = doc
        for key in path:
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current

    def _op_match(self, args, env):
        index = self.indexes[self.evaluate(args["match"], env).id]
        terms = self.evaluate(args.get("terms"), env)
        fields = [term["field"] for term in index["terms"]]
        wanted = [terms] if len(fields) == 1 else list(terms)

        matched = [
            doc
            for doc in self.collections.get(index["source"].id, {}).values()
            if [self._field(doc, f) for f in fields] == wanted
        ]
        values = index.get("values") or []
        if not values:
            return DocumentSet([doc["ref"] for doc in matched])

        # Indexes with values return value tuples sorted by those values
        rows = [[self._field(doc, value["field"]) for value in values] for doc in matched]
        for position in reversed(range(len(values))):
            rows.sort(
                key=lambda row: self._sort_key(row[position]),
                reverse=values[position].get("reverse", False),
            )
        return DocumentSet(rows)

    @staticmethod
    def _sort_key(value: Any) -> tuple:
        if isinstance(value, Ref):
            return (False, value.id)
        return (value is None, value)

    def _op_paginate(self, args, env):
        source = self.evaluate(args["paginate"], env)
        refs = source.entries
        size = self.evaluate(args.get("size", 64), env)
        after = self.evaluate(args.get("after"), env)
        before = self.evaluate(args.get("before"), env)

        if before is not None:
            end = before
            start = max(0, end - size)
        else:
            start = after or 0
            end = start + size

        page: Dict[str, Any] = {"data": refs[start:end]}
        if end < len(refs):
            page["after"] = end
        if start > 0:
            page["before"] = start
        return page

    def _op_count(self, args, env):
        target = self.evaluate(args["count"], env)
        if isinstance(target, dict):
            return {**target, "data": [len(target["data"])]}
        if isinstance(target, DocumentSet):
            return len(target.entries)
        return len(target)

    def _check_unique(self, collection: str, data: dict, skip: Optional[str] = None):
        for index in self.indexes.values():
            if not index["unique"] or index["source"].id != collection:
                continue
            fields = [term["field"] for term in index["terms"]]
            candidate = [self._field({"data": data}, f) for f in fields]
            for doc_id, doc in self.collections.get(collection, {}).items():
                if doc_id != skip and [self._field(doc, f) for f in fields] == candidate:
                    raise AbortError("instance not unique")

    def _op_create(self, args, env):
        coll = self.evaluate(args["create"], env)
        params = self.evaluate(args["params"], env)
        if coll.id not in self.collections:
            raise AbortError(f"collection {coll.id} does not exist")
        self._check_unique(coll.id, params.get("data") or {})
        doc_id = self.insert(coll.id, params.get("data") or {})
        doc = self.collections[coll.id][doc_id]
        if params.get("ttl") is not None:
            doc["ttl"] = params["ttl"]
        return copy.deepcopy(doc)

    def _write(self, ref: Ref, data: dict, merge: bool) -> dict:
        doc = self._find(ref)
        if doc is None:
            raise AbortError(f"document {ref} not found")
        new_data = merge_data(doc["data"], data) if merge else copy.deepcopy(data)
        self._check_unique(ref.collection.id, new_data, skip=ref.id)
        doc["data"] = new_data
        doc["ts"] = self._tick()
        return copy.deepcopy(doc)

    def _op_update(self, args, env):
        ref = self.evaluate(args["update"], env)
        params = self.evaluate(args["params"], env)
        return self._write(ref, params.get("data") or {}, merge=True)

    def _op_replace(self, args, env):
        ref = self.evaluate(args["replace"], env)
        params = self.evaluate(args["params"], env)
        return self._write(ref, params.get("data") or {}, merge=False)

    def _op_delete(self, args, env):
        ref = self.evaluate(args["delete"], env)
        doc = self._find(ref)
        if doc is None:
            raise AbortError(f"document {ref} not found")
        del self.collections[ref.collection.id][ref.id]
        return doc

    def _op_create_collection(self, args, env):
        params = self.evaluate(args["create_collection"], env)
        if params["name"] in self.collections:
            raise AbortError("instance already exists")
        self.collections[params["name"]] = {}
        return {"ref": Ref(id=params["name"], collection=COLLECTIONS), "name": params["name"]}

    def _op_create_index(self, args, env):
        params = self.evaluate(args["create_index"], env)
        if params["name"] in self.indexes:
            raise AbortError("instance already exists")
        if params["source"].id not in self.collections:
            raise AbortError(f"collection {params['source'].id} does not exist")
        self.indexes[params["name"]] = params
        return {"ref": Ref(id=params["name"], collection=INDEXES), "name": params["name"]}


# =========================
# Schemas
# =========================
class Address(BaseModel):
    city: str = "Tashkent"
    zip: Optional[str] = None


class User(BaseModel):
    email: str
    name: str = "anon"
    tags: List[str] = []
    address: Address = Address()
    age: Optional[int] = None


# =========================
# Fixtures
# =========================
@pytest.fixture
def engine():
    return MemoryEngine()


@pytest.fixture
def users():
    return model(
        "user",
        User,
        indexes={
            "by_email": {"terms": [lambda doc: doc.data.email], "unique": True},
            "by_name": {
                "terms": ["data.name"],
                "values": [{"field": "data.email", "reverse": True}],
            },
        },
    )


# Users model bound to the engine with its collection and indexes created
@pytest_asyncio.fixture
async def bound_users(engine, users):
    await SetupOrchestrator(engine).run([users], setup=True)
    engine.calls.clear()
    engine.events.clear()
    return users


@pytest_asyncio.fixture
async def alice(bound_users):
    return await bound_users.create(
        {"email": "alice@example.com", "name": "Alice", "tags": ["a", "b"], "age": 30}
    )
