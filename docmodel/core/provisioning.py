"""
PROVISIONING - Bind models to a client and create their collections/indexes

Purpose:
    1. Attach the execution collaborator to every model
    2. Create missing collections (batch 1)
    3. Create missing indexes (batch 2, only once batch 1 has completed)

Why two batches:
    CreateIndex() references its source collection, so it must never run
    before that collection is guaranteed to exist. Every creation is guarded
    by an existence check, so running setup again is a no-op.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Sequence

from docmodel.core.errors import TransportError
from docmodel.core.logs import LogContext
from docmodel.core.query import expr as q

if TYPE_CHECKING:
    from docmodel.core.database import Executor
    from docmodel.core.models import Model


def collection_query(model: "Model") -> q.Expr:
    """Idempotent collection creation for one model."""
    return q.let(
        {
            "name": model.name,
            "exists": q.exists(q.collection(q.var("name"))),
            "created_model": q.if_(q.var("exists"), None, model.create_collection_query()),
        },
        q.var("created_model"),
    )


class SetupOrchestrator:
    def __init__(self, executor: "Executor", echo: bool = False):
        self.executor = executor
        self.echo = echo
        self.log = LogContext("docmodel:setup", echo=echo)

    def prepare(self, models: Sequence["Model"]) -> Dict[str, List[q.Expr]]:
        """Compile both batches without running anything."""
        create_models: List[q.Expr] = []
        create_indexes: List[q.Expr] = []

        for model in models:
            create_models.append(collection_query(model))
            create_indexes.extend(model.index.create_queries(model.coll()))

        return {"collections": create_models, "indexes": create_indexes}

    async def _run_batch(self, operation: str, queries: List[q.Expr], names: List[str]) -> Any:
        """Run one batch as a single Do(); failures become TransportError."""
        query = q.do(*queries)
        self.log.debug(
            f"Running {operation} with {len(queries)} queries",
            {"operation": operation, "raw_query": query.to_wire()},
        )

        monitor = self.log.monitor(operation, {"models": names})
        try:
            result = await self.executor.query(query, {})
        except Exception as error:
            self.log.error(
                f"{operation} failed",
                {"operation": operation, "models": names, "error": str(error)},
            )
            raise TransportError(operation, str(error), target=names, cause=error) from error
        finally:
            monitor.finished()

        self.log.debug(f"{operation} done", {"operation": operation, "response": repr(result)})
        return result

    async def run(self, models: Sequence["Model"], setup: bool = False) -> Dict[str, Any]:
        for model in models:
            model.set_client(self.executor)
            model.log.echo = self.echo

        summary: Dict[str, Any] = {
            "models": [model.name for model in models],
            "collections": None,
            "indexes": None,
        }
        if not setup or not models:
            self.log.info("Bound models without provisioning", {"models": summary["models"]})
            return summary

        batches = self.prepare(models)
        self.log.info(
            f"Prepared {len(batches['collections'])} collection queries "
            f"and {len(batches['indexes'])} index queries",
            {"models": summary["models"]},
        )

        summary["collections"] = await self._run_batch(
            "setup:collections", batches["collections"], summary["models"]
        )
        if batches["indexes"]:
            summary["indexes"] = await self._run_batch(
                "setup:indexes", batches["indexes"], summary["models"]
            )

        self.log.info("Setup done", {"models": summary["models"]})
        return summary
