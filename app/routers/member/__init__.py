from fastapi import APIRouter

router = APIRouter(prefix="/api/member")

from . import classes, bookings, checkins, account

router.include_router(classes.router)
router.include_router(bookings.router)
router.include_router(checkins.router)
router.include_router(account.router)
