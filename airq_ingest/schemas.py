from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class WebhookEnvelope(BaseModel):
    """Sobre que envía el bridge del broker (regla de reenvío HTTP).

    ``payload`` es el JSON del dispositivo serializado como string.
    """
    clientid: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    payload: str
    qos: int = Field(default=0, ge=0, le=2)
    retain: bool = False
    timestamp: float = Field(..., gt=0)


class WebhookAccepted(BaseModel):
    success: bool = True
    message: str = "Data received successfully"
    request_id: str = Field(..., alias="requestId")
    data_id: str = Field(..., alias="dataId")
    status: str
    duplicate: bool = False
    observed_at: str = Field(..., alias="observedAt")
    received_at: str = Field(..., alias="receivedAt")

    model_config = {"populate_by_name": True}


class WebhookRejected(BaseModel):
    success: bool = False
    error: str
    kind: Optional[str] = None
    field: Optional[str] = None
    request_id: Optional[str] = Field(default=None, alias="requestId")

    model_config = {"populate_by_name": True}
