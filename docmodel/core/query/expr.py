"""
EXPRESSION ALGEBRA - Inert FQL expression trees

Purpose:
    Build the queries that the execution collaborator runs. Nothing here talks
    to the network: every builder returns an `Expr`, a plain data structure
    that can be composed, compared, logged and finally serialized with
    `to_wire()` into the FQL JSON wire format.

Usage:
    from docmodel.core.query import expr as q

    query = q.let(
        {"ref": q.ref(q.collection("user"), "123"),
         "exists": q.exists(q.var("ref")),
         "doc": q.if_(q.var("exists"), q.get(q.var("ref")), None)},
        q.var("doc"),
    )
"""

import json
from datetime import date, datetime
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

from docmodel.core.schemas import Ref


class Expr:
    """A single node of an expression tree."""

    __slots__ = ("op", "args")

    def __init__(self, op: str, args: Dict[str, Any]):
        self.op = op
        self.args = args

    def to_wire(self) -> Any:
        if self.op == "let":
            return {
                "let": [{name: to_wire(value)} for name, value in self.args["let"].items()],
                "in": to_wire(self.args["in"]),
            }
        if self.op == "select":
            wire = {"select": list(self.args["select"]), "from": to_wire(self.args["from"])}
            if "default" in self.args:
                wire["default"] = to_wire(self.args["default"])
            return wire
        return {key: to_wire(value) for key, value in self.args.items()}

    def __eq__(self, other):
        if not isinstance(other, Expr):
            return NotImplemented
        return self.op == other.op and self.args == other.args

    def __hash__(self):
        return hash(json.dumps(self.to_wire(), sort_keys=True, default=str))

    def __repr__(self):
        return f"Expr({json.dumps(self.to_wire(), default=str)})"


def to_wire(value: Any) -> Any:
    """Serialize any expression position value into FQL JSON."""
    if isinstance(value, Expr):
        return value.to_wire()
    if isinstance(value, Ref):
        return {"@ref": _ref_wire(value)}
    if isinstance(value, BaseModel):
        return to_wire(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        # Literal objects must be wrapped, otherwise the server reads them as calls
        return {"object": {str(k): to_wire(v) for k, v in value.items()}}
    if isinstance(value, (list, tuple)):
        return [to_wire(v) for v in value]
    if isinstance(value, datetime):
        return {"@ts": value.isoformat()}
    if isinstance(value, date):
        return {"@date": value.isoformat()}
    return value


def _ref_wire(ref: Ref) -> Dict[str, Any]:
    wire: Dict[str, Any] = {"id": ref.id}
    if ref.collection is not None:
        wire["collection"] = {"@ref": _ref_wire(ref.collection)}
    if ref.database is not None:
        wire["database"] = {"@ref": _ref_wire(ref.database)}
    return wire


# =========================
# Binding and flow control
# =========================
def let(bindings: Mapping[str, Any], body: Any) -> Expr:
    """Bind values in order; later bindings may refer to earlier ones."""
    return Expr("let", {"let": dict(bindings), "in": body})


def var(name: str) -> Expr:
    return Expr("var", {"var": name})


def if_(condition: Any, then: Any, else_: Any) -> Expr:
    return Expr("if", {"if": condition, "then": then, "else": else_})


def do(*exprs: Any) -> Expr:
    """Evaluate every expression in order and return the last result."""
    if not exprs:
        raise ValueError("do() needs at least one expression")
    return Expr("do", {"do": list(exprs)})


def abort(message: str) -> Expr:
    return Expr("abort", {"abort": message})


def lambda_(param: str, body: Any) -> Expr:
    return Expr("lambda", {"lambda": param, "expr": body})


def map_(collection: Any, func: Expr) -> Expr:
    return Expr("map", {"map": func, "collection": collection})


def select(path: Any, source: Any, default: Any = ...) -> Expr:
    if isinstance(path, str):
        path = path.split(".")
    elif not isinstance(path, (list, tuple)):
        path = [path]
    args: Dict[str, Any] = {"select": list(path), "from": source}
    if default is not ...:
        args["default"] = default
    return Expr("select", args)


# =========================
# References
# =========================
def database(name: str) -> Expr:
    return Expr("database", {"database": name})


def collection(name: Any, scope: Optional[Expr] = None) -> Expr:
    args: Dict[str, Any] = {"collection": name}
    if scope is not None:
        args["scope"] = scope
    return Expr("collection", args)


def index(name: Any, scope: Optional[Expr] = None) -> Expr:
    args: Dict[str, Any] = {"index": name}
    if scope is not None:
        args["scope"] = scope
    return Expr("index", args)


def ref(collection_expr: Any, ref_id: Any) -> Expr:
    return Expr("ref", {"ref": collection_expr, "id": ref_id})


def documents(collection_expr: Any) -> Expr:
    return Expr("documents", {"documents": collection_expr})


# =========================
# Reads
# =========================
def exists(target: Any) -> Expr:
    return Expr("exists", {"exists": target})


def get(target: Any) -> Expr:
    return Expr("get", {"get": target})


def match(index_expr: Any, *terms: Any) -> Expr:
    args: Dict[str, Any] = {"match": index_expr}
    if len(terms) == 1:
        args["terms"] = terms[0]
    elif terms:
        args["terms"] = list(terms)
    return Expr("match", args)


def paginate(
    set_expr: Any,
    size: Any = None,
    after: Any = None,
    before: Any = None,
) -> Expr:
    args: Dict[str, Any] = {"paginate": set_expr}
    if size is not None:
        args["size"] = size
    if after is not None:
        args["after"] = after
    if before is not None:
        args["before"] = before
    return Expr("paginate", args)


def count(target: Any) -> Expr:
    return Expr("count", {"count": target})


# =========================
# Writes
# =========================
def create(collection_expr: Any, params: Mapping[str, Any]) -> Expr:
    return Expr("create", {"create": collection_expr, "params": dict(params)})


def update(ref_expr: Any, params: Mapping[str, Any]) -> Expr:
    return Expr("update", {"update": ref_expr, "params": dict(params)})


def replace(ref_expr: Any, params: Mapping[str, Any]) -> Expr:
    return Expr("replace", {"replace": ref_expr, "params": dict(params)})


def delete(ref_expr: Any) -> Expr:
    return Expr("delete", {"delete": ref_expr})


def create_collection(params: Mapping[str, Any]) -> Expr:
    return Expr("create_collection", {"create_collection": dict(params)})


def create_index(params: Mapping[str, Any]) -> Expr:
    return Expr("create_index", {"create_index": dict(params)})
