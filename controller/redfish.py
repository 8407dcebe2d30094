"""Read-only Redfish access to the controller's thermal resource."""

from __future__ import annotations

import logging
from typing import List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadError

from models.errors import RemoteUnreachable

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ResourceStatus(_Payload):
    state: str = Field("Enabled", alias="State")
    health: Optional[str] = Field(None, alias="Health")


class RedfishTemperature(_Payload):
    name: str = Field(..., alias="Name")
    physical_context: Optional[str] = Field(None, alias="PhysicalContext")
    reading_celsius: Optional[float] = Field(None, alias="ReadingCelsius")
    upper_threshold_critical: Optional[float] = Field(None, alias="UpperThresholdCritical")
    upper_threshold_fatal: Optional[float] = Field(None, alias="UpperThresholdFatal")
    status: ResourceStatus = Field(default_factory=ResourceStatus, alias="Status")


class RedfishFan(_Payload):
    name: str = Field(..., alias="FanName")
    current_reading: Optional[float] = Field(None, alias="CurrentReading")
    units: Optional[str] = Field(None, alias="Units")
    status: ResourceStatus = Field(default_factory=ResourceStatus, alias="Status")


class ThermalPayload(_Payload):
    fans: List[RedfishFan] = Field(default_factory=list, alias="Fans")
    temperatures: List[RedfishTemperature] = Field(default_factory=list, alias="Temperatures")


class RedfishClient:
    """Minimal HTTP client for the controller's Redfish service."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        thermal_path: str = "/redfish/v1/Chassis/1/Thermal/",
        timeout: float = 10.0,
        verify: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.thermal_path = thermal_path
        self._client = httpx.Client(
            base_url=f"https://{host}",
            auth=(username, password),
            timeout=timeout,
            verify=verify,
            headers={"Accept": "application/json", "User-Agent": "ilo-thermal-sync"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_thermal(self) -> ThermalPayload:
        try:
            response = self._client.get(self.thermal_path)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RemoteUnreachable(
                f"Redfish request failed with status {exc.response.status_code}."
            ) from exc
        except httpx.HTTPError as exc:
            raise RemoteUnreachable(f"Redfish request failed: {exc}") from exc

        try:
            return ThermalPayload.model_validate(response.json())
        except (ValueError, PayloadError) as exc:
            logger.warning("Discarding malformed thermal payload", extra={"error": str(exc)})
            raise RemoteUnreachable("Controller returned a malformed thermal payload.") from exc
