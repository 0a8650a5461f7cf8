from __future__ import annotations

from typing import Iterable

from fastapi import status


class BillingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str, *, ids: Iterable[int] | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.ids = sorted(ids) if ids is not None else []

    def to_payload(self) -> dict:
        payload: dict = {"detail": self.detail}
        if self.ids:
            payload["ids"] = self.ids
        return payload


class ValidationError(BillingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class NotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND


class Conflict(BillingError):
    status_code = status.HTTP_409_CONFLICT


class Exhausted(BillingError):
    status_code = status.HTTP_409_CONFLICT


class Forbidden(BillingError):
    status_code = status.HTTP_403_FORBIDDEN
