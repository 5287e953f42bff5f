import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from meez_recipes.app.api.deps import get_cache_store, get_pipeline
from meez_recipes.app.core.errors import ParseErrorCode, is_client_correctable
from meez_recipes.app.schemas.parse import ParseOutcome, ParseRequest
from meez_recipes.app.services.cache_store import CacheStore
from meez_recipes.app.services.recipe_pipeline import RecipePipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recipes", tags=["recipes"])

ERROR_STATUS = {
    ParseErrorCode.INVALID_INPUT: status.HTTP_400_BAD_REQUEST,
    ParseErrorCode.GENERATION_EMPTY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ParseErrorCode.FINAL_VALIDATION_FAILED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ParseErrorCode.FETCH_FAILED: status.HTTP_502_BAD_GATEWAY,
    ParseErrorCode.GENERATION_FAILED: status.HTTP_502_BAD_GATEWAY,
}


def outcome_response(outcome: ParseOutcome) -> JSONResponse:
    body = outcome.model_dump(by_alias=True, mode="json")
    if outcome.error is None:
        return JSONResponse(status_code=status.HTTP_200_OK, content=body)
    body["error"]["retryable"] = not is_client_correctable(outcome.error.code)
    return JSONResponse(status_code=ERROR_STATUS[outcome.error.code], content=body)


@router.post("/parse")
async def parse_recipe(payload: ParseRequest, pipeline: RecipePipeline = Depends(get_pipeline)):
    request_id = uuid.uuid4().hex[:12]
    outcome = await pipeline.parse(
        payload.input,
        force_refresh=payload.force_refresh,
        is_dish_name_search=payload.is_dish_name_search,
        request_id=request_id,
        image=payload.image,
    )
    logger.info(
        "[%s] parse finished: from_cache=%s error=%s total_ms=%s",
        request_id,
        outcome.from_cache,
        outcome.error.code.value if outcome.error else None,
        outcome.timings.get("total"),
    )
    return outcome_response(outcome)


@router.get("/{recipe_id}")
async def get_recipe(recipe_id: int, store: CacheStore = Depends(get_cache_store)):
    record = await store.get_by_id(recipe_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Recipe not found")
    return {
        "id": record.id,
        "cacheKey": record.cache_key,
        "sourceType": record.source_type.value,
        "recipe": record.recipe.to_document(),
        "createdAt": record.created_at.isoformat() if record.created_at else None,
    }
