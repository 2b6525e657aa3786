"""Request envelope accepted by the sync endpoints."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SyncRequest(BaseModel):
    """Body of a POST to /api/sync/{record_type}.

    Records are kept as raw objects here and validated by the record
    type, since their payload fields differ per type.
    """

    action: Literal["push", "pull", "delete"] = Field(
        ..., description="Operation to perform."
    )
    userId: str = Field(..., min_length=1, description="Owner of the records.")
    deviceId: str = Field(..., min_length=1, description="Device making the request.")
    records: Optional[list[Any]] = Field(
        None, description="Records to push (push only)."
    )
    lastSyncTime: Optional[str] = Field(
        None, description="Client's last successful sync, ISO-8601 (pull only)."
    )
    recordId: Optional[str] = Field(
        None, description="Record to soft-delete (delete only)."
    )

    @field_validator("userId", "deviceId", "lastSyncTime", "recordId")
    @classmethod
    def ensure_utf8(cls, v: Optional[str], info) -> Optional[str]:
        if v is None:
            return None
        try:
            v.encode("utf-8")
        except UnicodeEncodeError:
            raise ValueError(f"Field '{info.field_name}' must be valid UTF-8 text") from None
        return v

    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "action": "push",
                "userId": "user_123",
                "deviceId": "device_3f2a9c",
                "records": [
                    {
                        "id": "9b1d8a52-4f3e-4c1a-8d0e-2f6b7c1a9e44",
                        "text": "Groceries",
                        "done": False,
                        "projectId": "default",
                        "createdAt": "2026-01-05T09:00:00.000000+00:00",
                        "updatedAt": "2026-01-05T09:00:00.000000+00:00",
                        "isDeleted": False,
                    }
                ],
            }
        },
    )
