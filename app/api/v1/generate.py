"""Image generation endpoint: immediate (fast) or deferred (relaxed) delivery."""

from fastapi import APIRouter, Depends, Request

from app.core.dependencies import get_current_user_id, get_services
from app.core.exceptions import BadRequestError
from app.core.rate_limit import generate_rate_limit, limiter
from app.schemas.common import ErrorResponse
from app.schemas.generation import GenerateResponse
from app.services.container import Services

router = APIRouter(tags=["generation"])


@router.post(
    "/generate",
    response_model=GenerateResponse,
    response_model_exclude_none=True,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
@limiter.limit(generate_rate_limit)
async def generate(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Generate images with a provider configuration the caller can access.

    The body is read raw so the validator, not FastAPI, decides which
    message a malformed payload gets.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise BadRequestError("Invalid JSON body")

    return await services.generation_service.generate(payload, user_id)
