import pytest

from docmodel import ConfigurationError, IndexManager, model, q
from docmodel.core.query.paths import PathRecorder, record_path, resolve_path
from conftest import User


def test_record_path_from_accessor():
    """Attribute and item access are replayed into a key list"""
    assert record_path(lambda doc: doc.data.address["city"]) == ["data", "address", "city"]


def test_record_path_deep_chain():
    accessor = lambda d: d.a.b.c.d.e.f.g.h  # noqa: E731
    assert record_path(accessor) == list("abcdefgh")


def test_recorder_touches_no_data():
    """A fresh recorder is returned per access and cannot be written to"""
    keys = []
    root = PathRecorder(keys)
    child = root.data

    assert child is not root
    with pytest.raises(TypeError):
        root.data = 1


def test_resolve_path_forms():
    assert resolve_path("data.email") == ["data", "email"]
    assert resolve_path(["data", "email"]) == ["data", "email"]
    assert resolve_path(lambda doc: doc.data.email) == ["data", "email"]


def test_resolve_empty_path_fails():
    with pytest.raises(ConfigurationError):
        resolve_path("")


def test_full_index_name(users):
    assert users.index.full_index_name("by_email") == "user-by_email"


def test_full_index_name_before_binding():
    """A catalog not bound to a model cannot name its indexes"""
    manager = IndexManager({"by_email": {"terms": ["data.email"]}})
    with pytest.raises(ConfigurationError):
        manager.full_index_name("by_email")


def test_unknown_field_is_rejected_at_definition():
    with pytest.raises(ConfigurationError) as exc_info:
        model("user", User, indexes={"bad": {"terms": ["data.emial"]}})
    assert "emial" in str(exc_info.value)


def test_unknown_envelope_field_is_rejected():
    with pytest.raises(ConfigurationError):
        model("user", User, indexes={"bad": {"terms": [lambda doc: doc.email]}})


def test_nested_model_paths_are_checked():
    model("user", User, indexes={"by_city": {"terms": ["data.address.city"]}})
    with pytest.raises(ConfigurationError):
        model("user", User, indexes={"by_town": {"terms": ["data.address.town"]}})


def test_create_index_expression(users):
    created = users.index.create_index("by_name", users.coll())

    assert created == q.create_index(
        {
            "name": "user-by_name",
            "source": q.collection("user"),
            "terms": [{"field": ["data", "name"]}],
            "values": [
                {"field": ["data", "email"], "reverse": True},
                {"field": ["ref"], "reverse": False},
            ],
            "unique": False,
        }
    )


def test_create_index_carries_flags():
    users = model(
        "user",
        User,
        indexes={
            "by_email": {
                "terms": ["data.email"],
                "unique": True,
                "serialized": True,
                "data": {"owner": "billing"},
            }
        },
    )
    params = users.index.create_index("by_email", users.coll()).args["create_index"]

    assert params["unique"] is True
    assert params["serialized"] is True
    assert params["data"] == {"owner": "billing"}


def test_create_queries_are_guarded(users):
    """Each index gets one exists-check-then-create expression"""
    queries = users.index.create_queries(users.coll())
    assert len(queries) == 2

    wire = queries[0].to_wire()
    bindings = wire["let"]
    assert bindings[0] == {"name": "user-by_email"}
    assert bindings[1] == {"exists": {"exists": {"index": {"var": "name"}}}}
    assert bindings[2]["created_index"]["if"] == {"var": "exists"}
    assert bindings[2]["created_index"]["then"] is None
    assert "create_index" in bindings[2]["created_index"]["else"]


def test_match_is_pure(engine, users):
    """Compiling a match does not call the executor"""
    users.set_client(engine)
    matched = users.index.match("by_email", "alice@example.com")

    assert engine.calls == []
    assert matched.to_wire() == {
        "match": {"index": "user-by_email"},
        "terms": "alice@example.com",
    }


def test_match_unknown_index(users):
    with pytest.raises(ConfigurationError):
        users.index.match("missing", "x")


def test_ref_position(users):
    """Entries of an index with values carry the document ref last"""
    assert users.index.ref_position("by_email") is None
    assert users.index.ref_position("by_name") == 1

    params = users.index.create_index("by_email", users.coll()).args["create_index"]
    assert params["values"] == []
