"""
User registration route.

- POST /v1/users: register a user (starts on free with no subscription)
"""
from typing import Optional
from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from membership.features.users.service import create_user
from membership.models.user import User


router = APIRouter(prefix="/v1/users", tags=["users"])


class CreateUserRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1, max_length=100)
    email: Optional[str] = None
    display_name: Optional[str] = Field(None, alias="displayName")


@router.post("", response_model=User, status_code=201)
def register(request: CreateUserRequest):
    return create_user(request.user_id, email=request.email, display_name=request.display_name)
