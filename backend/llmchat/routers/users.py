from fastapi import APIRouter, Depends
from typing import List

from llmchat.core.errors import AppError, to_http_exception
from llmchat.dependencies.auth import get_current_user
from llmchat.schemas.user import CurrentUser, UserResponse
from llmchat.services.completion_service import completion_orchestrator


router = APIRouter(tags=["users"])


@router.get("/users/me", response_model=UserResponse)
async def read_users_me(current_user: CurrentUser = Depends(get_current_user)):
  """Профиль текущего пользователя"""

  return current_user


@router.get("/models", response_model=List[str])
async def list_models(current_user: CurrentUser = Depends(get_current_user)):
  """Модели, доступные у провайдера"""

  try:
    return await completion_orchestrator.list_models()
  except AppError as e:
    raise to_http_exception(e)
