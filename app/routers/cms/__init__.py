from fastapi import APIRouter

router = APIRouter(prefix="/api/cms")

from . import classes, payments, subscriptions

router.include_router(classes.router)
router.include_router(payments.router)
router.include_router(subscriptions.router)
