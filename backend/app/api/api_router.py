from fastapi import APIRouter
from app.api.routes.generation import generation_router
from app.api.routes.inbox import inbox_router
from app.api.routes.webhooks import webhooks_router

api_router = APIRouter()

api_router.include_router(inbox_router)
api_router.include_router(webhooks_router)
api_router.include_router(generation_router)
