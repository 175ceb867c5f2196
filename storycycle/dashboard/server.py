"""Read-only dashboard over the persisted cycle state."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse

from storycycle import __version__
from storycycle.logging import get_logger
from storycycle.persistence import CYCLE_SNAPSHOT, EPIC_SNAPSHOT, read_history, read_snapshot

__all__ = ["create_app"]


logger = get_logger(__name__)


def create_app(state_dir: Union[Path, str] = Path(".storycycle/state")) -> FastAPI:
    """Create a FastAPI app serving the snapshots written by the state writer."""

    root_path = Path(state_dir)
    app = FastAPI(title="storycycle dashboard", version=__version__)

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/cycle")
    def api_cycle() -> dict[str, Any]:
        return _load(root_path, CYCLE_SNAPSHOT)

    @app.get("/api/epic")
    def api_epic() -> dict[str, Any]:
        return _load(root_path, EPIC_SNAPSHOT)

    @app.get("/api/history")
    def api_history(limit: Optional[int] = Query(default=100, ge=0)) -> list[dict[str, Any]]:
        _require_root(root_path)
        return read_history(root_path, limit)

    @app.get("/", response_class=HTMLResponse)
    def index() -> HTMLResponse:
        return HTMLResponse(content=_render_template())

    return app


def _require_root(root_path: Path) -> None:
    if not root_path.exists():
        raise HTTPException(status_code=404, detail="State directory not found")


def _load(root_path: Path, name: str) -> dict[str, Any]:
    _require_root(root_path)
    snapshot = read_snapshot(root_path, name)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No {name} snapshot yet")
    logger.debug("Served %s", name, extra={"metadata": {"root": str(root_path)}})
    return snapshot


def _render_template() -> str:
    html_path = Path(__file__).parent / "templates" / "index.html"
    return html_path.read_text(encoding="utf-8")
