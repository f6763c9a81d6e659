from fastapi import APIRouter, Depends, HTTPException

from whatsdesk.routers.deps import get_supervisor, require_admin_token
from whatsdesk.schemas.whatsapp import ConnectionStatusResponse, QrResetRequest

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


def _require_supervisor(supervisor):
    if supervisor is None:
        raise HTTPException(status_code=503, detail="WhatsApp provider not configured")
    return supervisor


@router.get("/status", response_model=ConnectionStatusResponse)
async def connection_status(supervisor=Depends(get_supervisor)):
    """Current connection state and QR challenge, if any."""
    return _require_supervisor(supervisor).status()


@router.post("/qr/reset", response_model=ConnectionStatusResponse, dependencies=[Depends(require_admin_token)])
async def reset_qr(request: QrResetRequest | None = None, supervisor=Depends(get_supervisor)):
    """Drop stored credentials and start a fresh QR login."""
    allow = request.allow_when_connected if request else False
    result = await _require_supervisor(supervisor).force_new_qr(allow_when_connected=allow)
    if not result.ok:
        raise HTTPException(status_code=409, detail=result.error)
    return result.value
