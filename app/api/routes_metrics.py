import secrets

from fastapi import APIRouter, HTTPException, Request, Response

router = APIRouter()


def _authorize_scrape(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None)
    token = getattr(app_settings, "metrics_token", None)
    if not token:
        return
    supplied = request.headers.get("Authorization") or ""
    if not secrets.compare_digest(supplied, f"Bearer {token}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.get("/metrics")
async def metrics_endpoint(request: Request) -> Response:
    registry = getattr(request.app.state, "metrics", None)
    if registry is None or not registry.enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    _authorize_scrape(request)
    payload, content_type = registry.render()
    return Response(content=payload, media_type=content_type)
