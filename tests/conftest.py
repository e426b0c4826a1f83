import json
import os
import sys
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


BASE_URL = "https://api.cointrack.test"


class FakeBackend:
    """Routes (method, path) to handlers and records every request it sees."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.calls: List[Dict[str, Any]] = []

    def route(self, method: str, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes[(method.upper(), path)] = handler

    def on(self, method: str, path: str, status: int = 200, body: Any = None) -> None:
        def _handler(_: httpx.Request) -> httpx.Response:
            if body is None:
                return httpx.Response(status)
            return httpx.Response(status, json=body)

        self.route(method, path, _handler)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body: Optional[Any] = json.loads(request.content) if request.content else None
        self.calls.append(
            {
                "method": request.method,
                "path": request.url.path,
                "auth": request.headers.get("Authorization"),
                "json": body,
            }
        )
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route {request.method} {request.url.path}"})
        return handler(request)

    def count(self, method: str, path: str) -> int:
        return sum(1 for c in self.calls if c["method"] == method.upper() and c["path"] == path)

    def last(self, method: str, path: str) -> Dict[str, Any]:
        matching = [c for c in self.calls if c["method"] == method.upper() and c["path"] == path]
        assert matching, f"{method} {path} was never called"
        return matching[-1]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), base_url=BASE_URL)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()
