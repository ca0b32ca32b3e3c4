from fastapi import APIRouter

from presencebook import config
from presencebook.services.activities import KNOWN_ACTIVITY_TYPES
from presencebook.services.resilience import describe_call_sites

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/resilience")
def resilience_config():
    return {
        "call_sites": describe_call_sites(),
        "inline_image_max_bytes": config.INLINE_IMAGE_MAX_BYTES,
        "image_max_edge": config.IMAGE_MAX_EDGE,
        "duplicate_guard_window": config.DUPLICATE_GUARD_WINDOW,
        "known_activity_types": list(KNOWN_ACTIVITY_TYPES),
    }
