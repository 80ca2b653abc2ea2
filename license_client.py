import asyncio
import logging
import math
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from activation_state import STATE_FILENAME, ActivationStateFile, ClientActivationState
from config import settings
from errors import ErrorType, IdentityStorageError
from key_codec import validate_format
from machine_identity import MachineIdentityResolver, ResolvedMachineId, get_system_info

MS_PER_DAY = 1000 * 60 * 60 * 24

ACTIVATION_FAILURES = {
    404: ("Invalid license key", ErrorType.LICENSE_INVALID),
    410: ("License has expired", ErrorType.LICENSE_EXPIRED),
    429: ("Activation limit reached. Deactivate another device first.", ErrorType.LICENSE_LIMIT_REACHED),
    403: ("License is not active", ErrorType.LICENSE_INVALID),
}

VALIDATION_FAILURES = {
    404: ("License not found", ErrorType.LICENSE_INVALID),
    403: ("License not activated on this device", ErrorType.LICENSE_INVALID),
    410: ("License has expired", ErrorType.LICENSE_EXPIRED),
}

MSG_TIMEOUT = "Request timed out. Please check your connection."


def _failure(error: str, error_type: ErrorType, **extra) -> Dict[str, Any]:
    result = {"success": False, "error": error, "errorType": error_type.value}
    result.update(extra)
    return result


class ClientLicenseAgent:
    """
    Installation-side license manager.

    Talks to the license server for activation and validation, keeps the
    last known activation result on disk, and answers "is this installation
    licensed?" locally so the application keeps working offline.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        data_dir: Optional[Path] = None,
        identity: Optional[MachineIdentityResolver] = None,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.LICENSE_API_URL).rstrip("/")
        self.data_dir = Path(data_dir or settings.APP_DATA_DIR)
        self.logger = logger or logging.getLogger(__name__)
        self.identity = identity or MachineIdentityResolver.for_directory(self.data_dir, logger=self.logger)
        self.state_file = ActivationStateFile(self.data_dir / STATE_FILENAME, logger=self.logger)
        self.clock = clock
        self.transport = transport
        self.activation_state: Optional[ClientActivationState] = None

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    async def _request(self, method: str, path: str, timeout: float, **kwargs) -> httpx.Response:
        """
        Send one request to the license server, bounded by `timeout` overall.

        The httpx timeout still applies to each read; the overall deadline
        raises asyncio.TimeoutError.
        """
        async def send() -> httpx.Response:
            async with self._client(timeout) as client:
                return await client.request(method, f"{self.api_url}{path}", **kwargs)

        return await asyncio.wait_for(send(), timeout)

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # ==========================================
    # Activation
    # ==========================================

    async def activate_license(self, raw_key: str) -> Dict[str, Any]:
        """
        Activate a license key for this installation.

        The key is checked locally first; malformed input never reaches the
        network. Persisted state only changes on success.
        """
        self.logger.info("Activation started")

        validation = validate_format(raw_key)
        if not validation.valid:
            self.logger.warning("License key rejected locally: %s", validation.error)
            return _failure(validation.error, ErrorType.VALIDATION_ERROR)

        try:
            machine = self.identity.resolve()
        except IdentityStorageError as exc:
            self.logger.error("Failed to get machine ID: %s", exc)
            return _failure("Cannot identify device", ErrorType.STORAGE_ERROR)

        try:
            response = await self._request(
                "POST", "/activate", settings.ACTIVATE_TIMEOUT_SECONDS,
                json={"licenseKey": validation.key, "machineId": machine.value},
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            self.logger.error("Activation request timed out: %r", exc)
            return _failure(MSG_TIMEOUT, ErrorType.TIMEOUT_ERROR)
        except httpx.RequestError as exc:
            self.logger.error("Network error during activation: %s", exc)
            return _failure(f"Cannot reach license server at {self.api_url}", ErrorType.NETWORK_ERROR)
        except Exception as exc:
            self.logger.exception("Unexpected error during activation")
            return _failure("An unexpected error occurred", ErrorType.UNKNOWN_ERROR, detail=str(exc))

        data = self._json(response)
        self.logger.info("Activation response received: %s", response.status_code)

        if response.status_code == 200 and data.get("success"):
            result = {
                "success": True,
                "message": "License activated successfully",
                "licenseKey": validation.key,
            }
            if data.get("activationId") is not None:
                result["activationId"] = data["activationId"]
            warnings = []
            if machine.degraded:
                warnings.append("Device ID could not be stored; this device may need to be activated again after a restart")
            save_warning = self._save_activation_state(validation.key, machine)
            if save_warning:
                warnings.append(save_warning)
            if warnings:
                result["warning"] = "; ".join(warnings)
            self.logger.info("License activated successfully")
            return result

        if response.status_code in ACTIVATION_FAILURES:
            message, error_type = ACTIVATION_FAILURES[response.status_code]
            return _failure(message, error_type)

        return _failure(data.get("error") or "Activation failed", ErrorType.SERVER_ERROR)

    async def deactivate_license(self) -> Dict[str, Any]:
        """
        Release this installation's seat on the server and clear local state.
        """
        if not self.is_activated() or not self.activation_state.licenseKey:
            return _failure("No license to deactivate", ErrorType.VALIDATION_ERROR)

        license_key = self.activation_state.licenseKey
        try:
            machine = self.identity.resolve()
        except IdentityStorageError as exc:
            self.logger.error("Failed to get machine ID: %s", exc)
            return _failure("Cannot identify device", ErrorType.STORAGE_ERROR)

        try:
            response = await self._request(
                "POST", "/deactivate", settings.ACTIVATE_TIMEOUT_SECONDS,
                json={"licenseKey": license_key, "machineId": machine.value},
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            self.logger.error("Deactivation request timed out: %r", exc)
            return _failure(MSG_TIMEOUT, ErrorType.TIMEOUT_ERROR)
        except httpx.RequestError as exc:
            self.logger.error("Network error during deactivation: %s", exc)
            return _failure(f"Cannot reach license server at {self.api_url}", ErrorType.NETWORK_ERROR)
        except Exception as exc:
            self.logger.exception("Unexpected error during deactivation")
            return _failure("An unexpected error occurred", ErrorType.UNKNOWN_ERROR, detail=str(exc))

        data = self._json(response)
        if response.status_code == 200 and data.get("success"):
            self.reset_license()
            return {"success": True, "message": data.get("message") or "License deactivated"}

        if response.status_code == 404:
            # The server holds no seat for this machine; nothing left to release
            self.reset_license()
            return {"success": True, "message": "Activation not found on server. Local license cleared."}

        return _failure(data.get("error") or "Deactivation failed", ErrorType.SERVER_ERROR)

    # ==========================================
    # Server validation
    # ==========================================

    async def validate_with_server(self, license_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Check the license with the server.

        Only an unreachable server (network failure or timeout) falls back to
        the last known local activation. A malformed answer or a server error
        is reported as-is and leaves local state alone.
        """
        key_to_validate = license_key or (self.activation_state.licenseKey if self.activation_state else "")
        if not key_to_validate:
            return {"valid": False, "error": "No license key to validate",
                    "errorType": ErrorType.VALIDATION_ERROR.value}

        validation = validate_format(key_to_validate)
        if not validation.valid:
            return {"valid": False, "error": validation.error, "errorType": ErrorType.VALIDATION_ERROR.value}

        try:
            machine = self.identity.resolve()
        except IdentityStorageError as exc:
            self.logger.error("Failed to get machine ID: %s", exc)
            return {"valid": False, "error": "Cannot identify device", "errorType": ErrorType.STORAGE_ERROR.value}

        try:
            response = await self._request(
                "POST", "/validate", settings.VALIDATE_TIMEOUT_SECONDS,
                json={"licenseKey": validation.key, "machineId": machine.value},
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            self.logger.warning("Validation request timed out: %r", exc)
            return self._offline_result(validation.key, ErrorType.TIMEOUT_ERROR, MSG_TIMEOUT)
        except httpx.RequestError as exc:
            self.logger.warning("License server unreachable during validation: %s", exc)
            return self._offline_result(
                validation.key, ErrorType.NETWORK_ERROR, f"Cannot reach license server at {self.api_url}"
            )
        except Exception as exc:
            self.logger.exception("Unexpected error during validation")
            return {"valid": False, "error": "An unexpected error occurred",
                    "errorType": ErrorType.UNKNOWN_ERROR.value, "detail": str(exc)}

        data = self._json(response)

        if response.status_code == 200 and data.get("success"):
            if data.get("status") != "active":
                self.logger.warning("License %s is %s on the server", validation.key, data.get("status"))
                return {"valid": False, "error": "License is not active",
                        "errorType": ErrorType.LICENSE_INVALID.value, "status": data.get("status")}

            warning = self._save_activation_state(validation.key, machine)
            self.logger.info("License validation successful")
            result = {"valid": True, "status": data["status"], "expiresAt": data.get("expiresAt")}
            if warning:
                result["warning"] = warning
            return result

        if response.status_code in VALIDATION_FAILURES:
            message, error_type = VALIDATION_FAILURES[response.status_code]
            self.logger.warning("License validation failed: %s", data.get("error") or message)
            return {"valid": False, "error": data.get("error") or message,
                    "errorType": error_type.value, "reason": data.get("reason")}

        self.logger.error("Unexpected validation response %s", response.status_code)
        return {"valid": False, "error": data.get("error") or "License server error",
                "errorType": ErrorType.SERVER_ERROR.value}

    def _offline_result(self, license_key: str, error_type: ErrorType, message: str) -> Dict[str, Any]:
        if self.is_activated() and self.activation_state.licenseKey == license_key:
            days = self.get_offline_mode_days()
            self.logger.info("Server unreachable, using local activation (%d days offline)", days)
            return {
                "valid": True,
                "offline": True,
                "errorType": error_type.value,
                "offlineDays": days,
                "warnOffline": self.should_warn_about_offline_mode(),
            }
        return {"valid": False, "error": message, "errorType": error_type.value}

    async def check_server_status(self) -> Dict[str, Any]:
        self.logger.debug("Checking license server status")
        try:
            response = await self._request("GET", "/health", settings.HEALTH_TIMEOUT_SECONDS)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            self.logger.warning("License server health check timed out")
            return {"online": False, "error": "Timeout", "url": self.api_url}
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            self.logger.warning("License server is offline or unreachable: %s", exc)
            return {"online": False, "error": "Unreachable", "url": self.api_url}

        online = response.is_success
        self.logger.info("License server status: %s", "ONLINE" if online else "OFFLINE")
        return {"online": online, "status": response.status_code, "url": self.api_url}

    # ==========================================
    # Local activation state
    # ==========================================

    def _save_activation_state(self, license_key: str, machine: ResolvedMachineId) -> Optional[str]:
        """Persist the activation; returns a warning when only the in-memory copy survived."""
        self.activation_state = ClientActivationState(
            active=True,
            licenseKey=license_key,
            timestamp=self._now_ms(),
            machineId=machine.value,
        )
        try:
            self.state_file.save(self.activation_state)
        except OSError as exc:
            self.logger.error("Failed to save activation state: %s", exc)
            return "Activation could not be saved and will not survive a restart"
        self.logger.info("Activation state saved")
        return None

    def load_activation_state(self) -> Optional[ClientActivationState]:
        self.logger.debug("Loading activation state...")
        state = self.state_file.load()
        if state is None:
            self.logger.debug("No activation state found (first run or reset)")
            return None

        self.activation_state = state
        if self.revalidation_advised():
            self.logger.warning(
                "Activation is over %d days old - consider revalidating",
                settings.REVALIDATION_ADVISORY_DAYS,
            )
        return state

    def revalidation_advised(self) -> bool:
        if not self.is_activated() or not self.activation_state.timestamp:
            return False
        days = (self._now_ms() - self.activation_state.timestamp) / MS_PER_DAY
        return days > settings.REVALIDATION_ADVISORY_DAYS

    def is_activated(self) -> bool:
        return self.activation_state is not None and self.activation_state.active is True

    def get_activation_info(self) -> Optional[Dict[str, Any]]:
        return self.activation_state.model_dump() if self.activation_state else None

    def get_offline_mode_days(self) -> int:
        if not self.activation_state or not self.activation_state.timestamp:
            return 0
        elapsed = self._now_ms() - self.activation_state.timestamp
        return max(0, math.floor(elapsed / MS_PER_DAY))

    def is_in_offline_mode(self) -> bool:
        return self.is_activated() and self.get_offline_mode_days() > 0

    def should_warn_about_offline_mode(self) -> bool:
        return self.get_offline_mode_days() > settings.OFFLINE_WARNING_DAYS

    def reset_license(self) -> Dict[str, Any]:
        """
        Forget the local activation. The in-memory reset always succeeds; a
        state file that cannot be removed only produces a warning.
        """
        self.logger.info("Resetting license")
        self.activation_state = None
        try:
            if self.state_file.delete():
                self.logger.info("Activation state file deleted")
            else:
                self.logger.debug("No activation state file to delete")
        except OSError as exc:
            self.logger.warning("File deletion error: %s", exc)
            return {"success": True, "warning": "License cleared but file deletion failed"}

        return {"success": True, "message": "License reset successfully"}

    def get_diagnostics(self) -> Dict[str, Any]:
        machine = self.identity.resolve()
        return {
            "machineId": machine.value,
            "machineIdSource": machine.source,
            "machineIdPersistent": machine.persistent,
            "apiUrl": self.api_url,
            "activation": self.get_activation_info(),
            "systemInfo": get_system_info(),
        }
