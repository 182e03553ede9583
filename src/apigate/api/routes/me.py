"""Identity and quota of the calling client."""

from fastapi import APIRouter, Request

from apigate.dependencies import CurrentClient

router = APIRouter(tags=["Clients"])


@router.get("/me", status_code=200)
async def whoami(request: Request, client: CurrentClient) -> dict:
    verdict = request.state.verdict
    return {
        "client_id": client.client_id,
        "name": client.name,
        "workspace_id": client.workspace,
        "scopes": client.scopes,
        "expires_at": client.expires_at.isoformat() if client.expires_at else None,
        "rate_limit": {
            "limit": verdict.limit,
            "remaining": verdict.remaining,
            "reset_at": verdict.reset_at.isoformat(),
        },
    }
