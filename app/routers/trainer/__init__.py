from fastapi import APIRouter

router = APIRouter(prefix="/api/trainer")

from . import classes

router.include_router(classes.router)
