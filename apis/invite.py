from fastapi import APIRouter, Depends, Query

from core.auth import get_current_user
from core.db import DB
from core.invite_service import get_invite_info, list_invite_records
from .base import success_response

router = APIRouter(prefix="/invite", tags=["邀请"])


@router.get("", summary="获取邀请信息")
async def get_invite(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response(get_invite_info(session, current_user["username"]))
    finally:
        session.close()


@router.get("/records", summary="获取邀请记录")
async def get_invite_records(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(list_invite_records(session, current_user["username"], page=page, page_size=page_size))
    finally:
        session.close()
