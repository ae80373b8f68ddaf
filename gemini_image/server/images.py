from fastapi import APIRouter, Depends

from gemini_image.models import (
    GeneratedImage,
    GenerateImagesRequest,
    GenerateImagesResponse,
    GenerationRequest,
)
from gemini_image.server.middleware import get_generator, verify_api_key
from gemini_image.services import ImageGenerator
from gemini_image.utils.codec import decode_input_image

router = APIRouter()


@router.post("/v1/images/generations", response_model=GenerateImagesResponse, tags=["Images"])
async def generate_images(
    request: GenerateImagesRequest,
    api_key: str = Depends(verify_api_key),
    generator: ImageGenerator = Depends(get_generator),
):
    input_image = decode_input_image(request.image) if request.image else None
    result = await generator.generate(
        GenerationRequest(
            prompt=request.prompt,
            session_id=request.session_id,
            input_image=input_image,
            size=request.size,
            count=request.n,
            mode=request.mode,
        )
    )
    return GenerateImagesResponse(
        session_id=result.session_id,
        is_new_session=result.is_new_session,
        images=[GeneratedImage(b64_json=img.base64, mime_type=img.mime_type) for img in result.images],
    )
