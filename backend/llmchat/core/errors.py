from fastapi import HTTPException, status


class AppError(ValueError):
  """
  Базовая ошибка приложения
  str(error) - машинный код (как ValueError("FORBIDDEN")), detail - текст для пользователя
  """

  code = "APP_ERROR"
  status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

  def __init__(self, detail: str | None = None):
    super().__init__(self.code)
    self.detail = detail or self.code


class NotFoundError(AppError):
  """Комната или другой ресурс не найдены"""

  code = "NOT_FOUND"
  status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(AppError):
  """Роль пользователя не позволяет выполнить действие"""

  code = "FORBIDDEN"
  status_code = status.HTTP_403_FORBIDDEN

  def __init__(self, action: str, detail: str | None = None):
    self.action = action
    super().__init__(detail or f"Недостаточно прав для действия: {action}")


class ConflictError(AppError):
  """Гонка по уникальному ключу (наружу не отдается)"""

  code = "CONFLICT"
  status_code = status.HTTP_409_CONFLICT


class InvalidRequestError(AppError):
  code = "INVALID_REQUEST"
  status_code = status.HTTP_400_BAD_REQUEST


class UpstreamError(AppError):
  """Ошибка LLM провайдера (completion / embeddings)"""

  code = "UPSTREAM_ERROR"
  status_code = status.HTTP_502_BAD_GATEWAY

  def __init__(self, detail: str, upstream_status: int | None = None):
    super().__init__(detail)
    self.upstream_status = upstream_status


def to_http_exception(error: AppError) -> HTTPException:
  """Перевод ошибки сервиса в HTTP ответ"""

  return HTTPException(
    status_code=error.status_code,
    detail={
      "code": str(error),
      "message": error.detail,
    },
  )
