from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class LicenseRequest(BaseModel):
    licenseKey: Optional[str] = None
    machineId: Optional[str] = None


class ActivationResponse(BaseModel):
    success: bool
    message: str
    activationId: Optional[int] = None


class ValidationResponse(BaseModel):
    success: bool
    status: str
    expiresAt: Optional[datetime] = None


class DeactivationResponse(BaseModel):
    success: bool
    message: str


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    errorType: str
    reason: Optional[str] = None


class ApiHealthResponse(BaseModel):
    success: bool
    status: str
    message: str
    timestamp: datetime


class HealthCheckResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime: float
