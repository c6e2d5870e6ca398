"""Shared builders for GitHub payloads and fake time sources."""

import base64
import json
import zlib
from typing import Any, Callable, Dict, List, Optional

import httpx

from marketplace_radar.config import Settings

NOW = 1_700_000_000.0


def make_settings(**overrides) -> Settings:
    values: Dict[str, Any] = {
        "github_token": "ghp_testtoken",
        "max_retries": 2,
        "retry_base_delay": 1.0,
        "retry_max_delay": 30.0,
        "search_page_delay": 0.0,
        "content_retry_attempts": 1,
        "check_repository_features": False,
        "seed_repositories": [],
    }
    values.update(overrides)
    return Settings(**values)


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Async stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


def transport(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.MockTransport:
    async def mock_handler(request: httpx.Request) -> httpx.Response:
        return handler(request)

    return httpx.MockTransport(mock_handler)


def repo_payload(owner: str, name: str, owner_type: str = "User", **fields) -> Dict[str, Any]:
    payload = {
        "id": zlib.crc32(f"{owner}/{name}".encode()),
        "name": name,
        "full_name": f"{owner}/{name}",
        "owner": {
            "login": owner,
            "type": owner_type,
            "html_url": f"https://github.com/{owner}",
        },
        "html_url": f"https://github.com/{owner}/{name}",
        "description": f"{name} plugin marketplace",
        "fork": False,
        "archived": False,
        "stargazers_count": 42,
        "forks_count": 7,
        "open_issues_count": 1,
        "language": "Python",
        "license": {"key": "mit", "name": "MIT License", "spdx_id": "MIT"},
        "topics": ["claude", "plugins"],
        "default_branch": "main",
        "size": 120,
        "created_at": "2024-01-01T00:00:00Z",
        "updated_at": "2024-06-01T00:00:00Z",
        "pushed_at": "2024-06-01T00:00:00Z",
    }
    payload.update(fields)
    return payload


def file_payload(path: str, data: Any, size: Optional[int] = None) -> Dict[str, Any]:
    text = data if isinstance(data, str) else json.dumps(data)
    raw = text.encode("utf-8")
    return {
        "type": "file",
        "path": path,
        "name": path.rsplit("/", 1)[-1],
        "sha": "abc123",
        "size": len(raw) if size is None else size,
        "encoding": "base64",
        "content": base64.b64encode(raw).decode("ascii"),
        "download_url": f"https://raw.githubusercontent.com/x/y/main/{path}",
    }


def marketplace_manifest(name: str = "acme-tools", plugins: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    return {
        "name": name,
        "owner": {"name": "Acme", "email": "dev@acme.test"},
        "metadata": {"description": "Acme plugins", "version": "1.0.0"},
        "plugins": plugins
        if plugins is not None
        else [
            {
                "name": "code-review",
                "source": "./plugins/code-review",
                "description": "Reviews pull requests",
                "version": "1.2.0",
                "author": {"name": "Acme"},
                "category": "productivity",
                "keywords": ["review"],
                "license": "MIT",
            },
            {"name": "deploy", "source": {"source": "github", "repo": "acme/deploy"}},
        ],
    }


def not_found() -> httpx.Response:
    return httpx.Response(404, json={"message": "Not Found"})


FAKE_REPOS = {
    "acme/market": repo_payload("acme", "market", owner_type="Organization"),
    "bob/tools": repo_payload("bob", "tools"),
    "carol/broken": repo_payload("carol", "broken"),
    "dan/empty": repo_payload("dan", "empty"),
    "dave/extra": repo_payload("dave", "extra"),
    "erin/mixed": repo_payload("erin", "mixed"),
    "frank/garbled": repo_payload("frank", "garbled"),
}
FAKE_MANIFESTS = {
    "acme/market": marketplace_manifest(),
    "bob/tools": marketplace_manifest(
        name="bob-tools",
        plugins=[{"name": "Bob Helper", "category": "productivity", "author": "bob", "tags": ["ai"]}],
    ),
    "dan/empty": marketplace_manifest(name="empty", plugins=[]),
    "dave/extra": marketplace_manifest(name="extra", plugins=[{"name": "extra-one"}]),
    "erin/mixed": marketplace_manifest(name="mixed", plugins=[{"name": "kept"}, 42]),
    "frank/garbled": '{"name": "garbled", "plugins": [',
}
FAKE_PLUGIN_MANIFESTS = {
    "acme/market/code-review": {"name": "code-review", "homepage": "https://acme.dev/review", "tags": ["ci"]},
}


class FakeGitHub:
    """Routes GitHub REST paths to canned payloads and records every call."""

    def __init__(self, search_hits=("acme/market", "bob/tools", "carol/broken", "dan/empty")):
        self.search_hits = list(search_hits)
        self.calls: List[str] = []
        self.on_search: Optional[Callable[[], None]] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path == "/search/repositories":
            if self.on_search:
                self.on_search()
            items = [FAKE_REPOS[name] for name in self.search_hits]
            return httpx.Response(200, json={"total_count": len(items), "items": items})
        if path == "/rate_limit":
            bucket = {"limit": 5000, "remaining": 4990, "reset": int(NOW), "used": 10}
            return httpx.Response(200, json={"resources": {"core": bucket}, "rate": bucket})

        parts = path.strip("/").split("/")
        full_name = "/".join(parts[1:3])
        if len(parts) == 3:
            return httpx.Response(200, json=FAKE_REPOS[full_name]) if full_name in FAKE_REPOS else not_found()
        rest = "/".join(parts[3:])
        if rest == "contents/.claude-plugin/marketplace.json" and full_name in FAKE_MANIFESTS:
            return httpx.Response(200, json=file_payload(rest[len("contents/"):], FAKE_MANIFESTS[full_name]))
        if rest.startswith("contents/.claude-plugin/plugins/"):
            manifest = FAKE_PLUGIN_MANIFESTS.get(f"{full_name}/{parts[6]}")
            if manifest:
                return httpx.Response(200, json=file_payload(rest[len("contents/"):], manifest))
        if rest == "languages":
            return httpx.Response(200, json={"Python": 10})
        if rest == "contributors":
            return httpx.Response(200, json=[{"login": parts[1], "contributions": 3}])
        if rest == "commits":
            return httpx.Response(200, json=[])
        return not_found()
