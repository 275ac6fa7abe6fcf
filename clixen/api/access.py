"""
Signed access token verification for workflow engines.

Workflows that cannot validate the JWT themselves POST it here. A valid token
yields its claims; the workflow must still re-check tier and permissions for
the action it performs.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from clixen.agent.pipeline import ClixenRuntime
from clixen.agent.structured_logging import api_log
from clixen.api.auth import get_runtime
from clixen.schemas import VerifyRequest, VerifyResponse
from clixen.services.access_token import AccessTokenError

router = APIRouter(prefix="/v1/access", tags=["access"])


@router.post("/verify", response_model=VerifyResponse)
async def verify_access_token(
    body: VerifyRequest,
    runtime: ClixenRuntime = Depends(get_runtime),
):
    try:
        claims = runtime.verifier.verify(body.token)
    except AccessTokenError as e:
        api_log.warning("Access token rejected", {"code": e.code})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": e.code},
        )

    if body.workflow and claims.get("workflow") != body.workflow:
        api_log.warning("Access token presented for the wrong workflow", {"workflow": body.workflow})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "workflow_mismatch"},
        )
    return VerifyResponse(claims=claims)
