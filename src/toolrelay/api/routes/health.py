from fastapi import APIRouter

from toolrelay import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "version": __version__}
