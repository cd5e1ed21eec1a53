from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.auth import get_current_user, require_admin
from core.db import DB
from core.plan_service import (
    create_plan,
    delete_plan,
    list_plans,
    plan_to_dict,
    update_plan,
)
from .base import success_response

router = APIRouter(prefix="/plans", tags=["套餐"])


class PlanRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(default="", max_length=2000)
    price_cents: int = Field(..., ge=0)
    duration_days: int = Field(default=30, ge=1, le=3650)
    transfer_gb: int = Field(default=0, ge=0)
    speed_limit: int = Field(default=0, ge=0)
    device_limit: int = Field(default=0, ge=0)
    group_id: int = Field(default=0, ge=0)
    hidden: bool = False
    sort: int = 0


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=2000)
    price_cents: Optional[int] = Field(default=None, ge=0)
    duration_days: Optional[int] = Field(default=None, ge=1, le=3650)
    transfer_gb: Optional[int] = Field(default=None, ge=0)
    speed_limit: Optional[int] = Field(default=None, ge=0)
    device_limit: Optional[int] = Field(default=None, ge=0)
    group_id: Optional[int] = Field(default=None, ge=0)
    hidden: Optional[bool] = None
    sort: Optional[int] = None


@router.get("", summary="获取可购买套餐")
async def get_plans(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response(list_plans(session))
    finally:
        session.close()


@router.get("/admin", summary="管理员获取全部套餐")
async def admin_get_plans(current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_plans(session, include_hidden=True))
    finally:
        session.close()


@router.post("/admin", summary="创建套餐")
async def admin_create_plan(payload: PlanRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        plan = create_plan(session, **payload.model_dump())
        return success_response(plan_to_dict(plan), message="套餐已创建")
    finally:
        session.close()


@router.put("/admin/{plan_id}", summary="更新套餐")
async def admin_update_plan(plan_id: int, payload: PlanUpdateRequest, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        plan = update_plan(session, plan_id, **payload.model_dump(exclude_none=True))
        return success_response(plan_to_dict(plan), message="套餐已更新")
    finally:
        session.close()


@router.delete("/admin/{plan_id}", summary="删除套餐")
async def admin_delete_plan(plan_id: int, current_user: dict = Depends(get_current_user)):
    require_admin(current_user)
    session = DB.get_session()
    try:
        delete_plan(session, plan_id)
        return success_response(message="套餐已删除")
    finally:
        session.close()
