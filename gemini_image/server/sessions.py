from fastapi import APIRouter, Depends, HTTPException, status

from gemini_image.models import SessionListResponse
from gemini_image.server.middleware import get_generator, verify_api_key
from gemini_image.services import ImageGenerator

router = APIRouter()


@router.get("/v1/sessions", response_model=SessionListResponse, tags=["Sessions"])
async def list_sessions(
    api_key: str = Depends(verify_api_key),
    generator: ImageGenerator = Depends(get_generator),
):
    return SessionListResponse(sessions=generator.list_sessions())


@router.delete("/v1/sessions/{session_id}", tags=["Sessions"])
async def delete_session(
    session_id: str,
    api_key: str = Depends(verify_api_key),
    generator: ImageGenerator = Depends(get_generator),
):
    if not generator.store.delete(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return {"success": True}
