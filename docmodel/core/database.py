import base64
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Sequence, Tuple, runtime_checkable

import httpx

from docmodel.core.config import settings
from docmodel.core.errors import TransportError
from docmodel.core.logs import configure_logging
from docmodel.core.provisioning import SetupOrchestrator
from docmodel.core.query.expr import Expr
from docmodel.core.schemas import Ref

if TYPE_CHECKING:
    from docmodel.core.models import Model


# =========================
# Execution contract
# =========================
@runtime_checkable
class Executor(Protocol):
    """Anything able to run an expression tree and return the parsed result."""

    async def query(self, expr: Expr, options: Optional[Dict[str, Any]] = None) -> Any:
        ...

    async def query_with_metrics(
        self, expr: Expr, options: Optional[Dict[str, Any]] = None
    ) -> Tuple[Any, Dict[str, Any]]:
        ...


@dataclass
class Outcome:
    """Explicit success-or-failure result of Model.execute(error_on_failure=False)."""

    value: Any = None
    error: Optional[TransportError] = None
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


# =========================
# Wire decoding
# =========================
def _decode_ref(raw: Dict[str, Any]) -> Ref:
    return Ref(
        id=raw["id"],
        collection=decode(raw["collection"]) if "collection" in raw else None,
        database=decode(raw["database"]) if "database" in raw else None,
    )


def decode(value: Any) -> Any:
    """Turn tagged FQL JSON (@ref, @obj, @ts, ...) into Python values."""
    if isinstance(value, list):
        return [decode(v) for v in value]
    if not isinstance(value, dict):
        return value

    if len(value) == 1:
        tag, inner = next(iter(value.items()))
        if tag == "@ref":
            return _decode_ref(inner)
        if tag == "@obj":
            return {k: decode(v) for k, v in inner.items()}
        if tag == "@ts":
            return datetime.fromisoformat(inner.replace("Z", "+00:00"))
        if tag == "@date":
            return date.fromisoformat(inner)
        if tag == "@set":
            return decode(inner)
        if tag == "@bytes":
            return base64.urlsafe_b64decode(inner)

    return {k: decode(v) for k, v in value.items()}


# =========================
# HTTP client
# =========================
class Client:
    """
    Default execution collaborator: posts FQL JSON to the database endpoint.

    Example:
        client = Client(secret="my-secret")
        await client.init([user_model, post_model], setup=True)
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        debug: Optional[bool] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret = secret if secret is not None else settings.SECRET
        self.endpoint = endpoint or settings.endpoint
        self.timeout = timeout if timeout is not None else settings.TIMEOUT
        self.debug = debug if debug is not None else settings.DEBUG
        self._http = http_client
        self._owns_http = http_client is None

        if self.debug:
            configure_logging("DEBUG")

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
            self._owns_http = True
        return self._http

    async def close(self):
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def _send(self, expr: Expr, options: Optional[Dict[str, Any]]) -> httpx.Response:
        options = options or {}
        headers = {
            "Authorization": f"Bearer {self.secret}",
            "Content-Type": "application/json",
            **options.get("headers", {}),
        }
        try:
            return await self.http.post(
                self.endpoint,
                json=expr.to_wire(),
                headers=headers,
                timeout=options.get("timeout", self.timeout),
            )
        except httpx.HTTPError as error:
            raise TransportError("query", f"request failed: {error}", cause=error) from error

    def _parse(self, response: httpx.Response) -> Any:
        try:
            payload = response.json()
        except ValueError as error:
            raise TransportError(
                "query",
                f"unreadable response (status {response.status_code})",
                cause=error,
                status_code=response.status_code,
            ) from error

        errors: Sequence[Any] = payload.get("errors") or []
        if response.status_code >= 400 or errors:
            description = errors[0].get("description", "unknown error") if errors else response.reason_phrase
            raise TransportError(
                "query",
                description,
                status_code=response.status_code,
                errors=list(errors),
            )

        return decode(payload.get("resource"))

    async def query(self, expr: Expr, options: Optional[Dict[str, Any]] = None) -> Any:
        response = await self._send(expr, options)
        return self._parse(response)

    async def query_with_metrics(
        self, expr: Expr, options: Optional[Dict[str, Any]] = None
    ) -> Tuple[Any, Dict[str, Any]]:
        response = await self._send(expr, options)
        metrics = {
            key: value for key, value in response.headers.items() if key.lower().startswith("x-")
        }
        return self._parse(response), metrics

    async def init(self, models: Sequence["Model"], setup: bool = False):
        """Bind the models to this client and optionally provision them."""
        return await SetupOrchestrator(self, echo=self.debug).run(models, setup=setup)
