"""
Statistics Web Interface
FastAPI app serving the statistics page, its assets and the JSON stats API.
"""

from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse
from fastapi.templating import Jinja2Templates
from starlette.requests import Request
import structlog

from mlcproxy.config.settings import Settings
from mlcproxy.stats.aggregator import StatsAggregator
from mlcproxy.version import VERSION

logger = structlog.get_logger(__name__)

DEFAULT_LANGUAGE = "de"

# Asset name -> (file in static dir, media type)
STATIC_ASSETS = {
    "styles.css": ("styles.css", "text/css"),
    "script.js": ("script.js", "application/javascript"),
    "favicon.ico": ("favicon.svg", "image/svg+xml"),
}


def preferred_language(accept_language: Optional[str]) -> str:
    """
    Extract the preferred language from an Accept-Language header.

    "en-US,en;q=0.9" -> "en"; a missing header gives the default ("de").
    """
    if not accept_language:
        return DEFAULT_LANGUAGE
    first = accept_language.split(",")[0].split(";")[0].strip()
    lang = first.split("-")[0].strip().lower()
    return lang or DEFAULT_LANGUAGE


def create_stats_app(aggregator: StatsAggregator, settings: Settings) -> FastAPI:
    """
    Create the statistics FastAPI application.

    Routes are registered both at the root (for requests addressed to the
    stats host) and below the stats path (for requests addressed to the
    proxy itself).

    Args:
        aggregator: Source of the statistics snapshot
        settings: Application settings (paths and static directory)

    Returns:
        Configured FastAPI application
    """
    static_dir = Path(settings.paths.static_dir)
    stats_path = settings.paths.stats_path
    api_path = settings.paths.api_path
    api_url = f"{stats_path}{api_path}/stats"

    app = FastAPI(
        title="MLCProxy Statistics",
        description="Traffic statistics for the MLCProxy forward proxy",
        version=VERSION,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.aggregator = aggregator

    templates = Jinja2Templates(directory=str(static_dir))

    async def stats_api():
        """Get the statistics snapshot."""
        return JSONResponse(aggregator.snapshot())

    async def index(request: Request):
        """Serve the statistics page in the preferred language."""
        lang = preferred_language(request.headers.get("accept-language"))
        template_name = f"index.{lang}.html"
        if not (static_dir / template_name).is_file():
            template_name = "index.html"
        if not (static_dir / template_name).is_file():
            logger.warning("stats_page_missing", static_dir=str(static_dir))
            raise HTTPException(status_code=404, detail="File not found")

        return templates.TemplateResponse(
            request,
            template_name,
            {
                "title": "MLCProxy Statistics",
                "api_url": api_url,
                "asset_base": stats_path,
                "version": VERSION,
            },
        )

    async def asset(name: str):
        """Serve a static asset of the statistics page."""
        entry = STATIC_ASSETS.get(name)
        if entry is None:
            raise HTTPException(status_code=404, detail="Not found")
        file_name, media_type = entry
        path = static_dir / file_name
        if not path.is_file():
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(path, media_type=media_type)

    # Exact routes first so the asset pattern cannot shadow them
    for route in (f"{api_path}/stats", api_url):
        app.add_api_route(route, stats_api, methods=["GET"])
    for route in ("/", stats_path, f"{stats_path}/"):
        app.add_api_route(route, index, methods=["GET"], response_class=HTMLResponse)
    for route in (f"{stats_path}/{{name}}", "/{name}"):
        app.add_api_route(route, asset, methods=["GET"])

    return app
