"""
classarena/routes/__init__.py
Route registration
"""
from fastapi import APIRouter

from classarena.routes import tournaments

router = APIRouter()

router.include_router(tournaments.router)
