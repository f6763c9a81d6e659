from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from whatsdesk.database import get_db
from whatsdesk.routers.deps import get_supervisor, require_admin_token
from whatsdesk.services.health_service import check_and_heal, get_system_health

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(supervisor=Depends(get_supervisor)):
    """Liveness plus WhatsApp connection state."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "whatsapp": supervisor.session.state.value if supervisor else "disabled",
    }


@router.get("/health/system")
async def system_health(db: Session = Depends(get_db)):
    return get_system_health(db)


@router.post("/health/heal", dependencies=[Depends(require_admin_token)])
async def heal_system(db: Session = Depends(get_db)):
    """Check and heal invariant violations."""
    return check_and_heal(db)
