from fastapi import APIRouter

from meez_recipes.app.api.routes import recipes

api_router = APIRouter()
api_router.include_router(recipes.router)
