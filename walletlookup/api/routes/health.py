from fastapi import APIRouter, Depends

from walletlookup.core.config import Settings, get_settings

router = APIRouter()


@router.get("/healthz")
async def healthz(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "worker_triggers": "enabled" if settings.cron_secret else "disabled"}
