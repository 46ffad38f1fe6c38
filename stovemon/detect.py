from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from .constants import RETRYABLE_SIGNATURES
from .state import DetectionFailure, DetectionOutcome, DetectionSuccess

API_KEY_HEADER = "X-API-Key"
NO_CACHE_HEADERS = {
    # Keep intermediaries (e.g. a tunnel/CDN) from serving a stale or empty body.
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}

ENDPOINT_HEALTH = "/health"
ENDPOINT_STATUS = "/status"
ENDPOINT_DETECT = "/detect"


class DetectionError(Exception):
    """Raised for transport or protocol failures talking to the detection service."""


def is_retryable(message: str, signatures: Sequence[str] = RETRYABLE_SIGNATURES) -> bool:
    """Classify a failure message as transient.

    Case-insensitive substring match against an allow-list of signatures."""
    low = (message or "").lower()
    return any(sig.lower() in low for sig in signatures)


# ---------------- Response models ----------------

@dataclass
class HealthResponse:
    status: str
    timestamp: str
    service: str
    auth_required: bool

    @classmethod
    def from_json(cls, data: dict) -> "HealthResponse":
        return cls(
            status=data["status"],
            timestamp=data["timestamp"],
            service=data["service"],
            auth_required=bool(data["auth_required"]),
        )


@dataclass
class StatusResponse:
    status: str
    timestamp: str
    user_type: str
    configuration: Dict[str, Any]
    endpoints: Dict[str, str]

    @classmethod
    def from_json(cls, data: dict) -> "StatusResponse":
        return cls(
            status=data["status"],
            timestamp=data["timestamp"],
            user_type=data["user_type"],
            configuration=dict(data["configuration"]),
            endpoints=dict(data["endpoints"]),
        )


@dataclass
class KnobResult:
    file: str
    is_on: bool
    line_count: int
    angle: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict) -> "KnobResult":
        angle = data.get("angle")
        return cls(
            file=data["file"],
            is_on=bool(data["is_on"]),
            line_count=int(data["line_count"]),
            angle=float(angle) if angle is not None else None,
            error=data.get("error"),
        )


@dataclass
class StoveStatusSummary:
    stove_is_on: bool
    total_knobs: int
    on_knobs: int
    off_knobs: int
    error_knobs: int
    on_knob_names: List[str] = field(default_factory=list)
    off_knob_names: List[str] = field(default_factory=list)
    error_knob_names: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> "StoveStatusSummary":
        return cls(
            stove_is_on=bool(data["stove_is_on"]),
            total_knobs=int(data["total_knobs"]),
            on_knobs=int(data["on_knobs"]),
            off_knobs=int(data["off_knobs"]),
            error_knobs=int(data["error_knobs"]),
            on_knob_names=list(data.get("on_knob_names") or []),
            off_knob_names=list(data.get("off_knob_names") or []),
            error_knob_names=list(data.get("error_knob_names") or []),
        )


@dataclass
class DetectionSummary:
    total_knobs: int
    on_knobs: int
    off_knobs: int
    error_knobs: int

    @classmethod
    def from_json(cls, data: dict) -> "DetectionSummary":
        return cls(
            total_knobs=int(data["total_knobs"]),
            on_knobs=int(data["on_knobs"]),
            off_knobs=int(data["off_knobs"]),
            error_knobs=int(data["error_knobs"]),
        )


@dataclass
class DetectionSettings:
    tolerance: float
    off_angle: float
    calibration_file: str

    @classmethod
    def from_json(cls, data: dict) -> "DetectionSettings":
        return cls(
            tolerance=float(data["tolerance"]),
            off_angle=float(data["off_angle"]),
            calibration_file=data["calibration_file"],
        )


@dataclass
class CroppedImage:
    filename: str
    data: str  # base64
    mime_type: str

    @classmethod
    def from_json(cls, data: dict) -> "CroppedImage":
        return cls(filename=data["filename"], data=data["data"], mime_type=data["mime_type"])


@dataclass
class DetectResponse:
    success: bool
    timestamp: str
    input_image: str
    settings: DetectionSettings
    detection_results: List[KnobResult]
    stove_status: StoveStatusSummary
    stove_is_on: bool
    summary: DetectionSummary
    user_type: Optional[str] = None
    image_source: Optional[str] = None
    cropped_images: Optional[List[CroppedImage]] = None

    @classmethod
    def from_json(cls, data: dict) -> "DetectResponse":
        cropped = data.get("cropped_images")
        return cls(
            success=bool(data["success"]),
            timestamp=data["timestamp"],
            input_image=data["input_image"],
            settings=DetectionSettings.from_json(data["settings"]),
            detection_results=[KnobResult.from_json(r) for r in data["detection_results"]],
            stove_status=StoveStatusSummary.from_json(data["stove_status"]),
            stove_is_on=bool(data["stove_is_on"]),
            summary=DetectionSummary.from_json(data["summary"]),
            user_type=data.get("user_type"),
            image_source=data.get("image_source"),
            cropped_images=[CroppedImage.from_json(c) for c in cropped] if cropped is not None else None,
        )


@dataclass
class APIResult:
    data: Any = None
    error: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.error is None


# ---------------- Client ----------------

class DetectionClient:
    """HTTP client for the remote stove detection service.

    One requests.Session per client; every request carries the API key (if
    configured) and no-cache headers. Failures surface as DetectionError with a
    message that names the failure class (empty response, connection error,
    timeout, malformed response) so callers can classify it."""
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_s: float = 30.0, session=None):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout_s = float(timeout_s)
        self._session = session if session is not None else requests.Session()

    def _headers(self, json_body: bool = False) -> dict:
        headers = dict(NO_CACHE_HEADERS)
        if self.api_key:
            headers[API_KEY_HEADER] = self.api_key
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _request(self, method: str, endpoint: str, what: str, body: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self._session.request(
                method,
                url,
                headers=self._headers(json_body=body is not None),
                json=body,
                timeout=self.timeout_s,
            )
        except requests.exceptions.Timeout as e:
            raise DetectionError(f"{what} failed: timeout ({e})") from e
        except requests.exceptions.ConnectionError as e:
            raise DetectionError(f"{what} failed: connection error ({e})") from e
        except requests.exceptions.RequestException as e:
            raise DetectionError(f"{what} failed: {e}") from e

        text = resp.text or ""
        if resp.status_code != 200:
            if not text.strip():
                raise DetectionError(f"{what} failed: Server returned empty response (status: {resp.status_code})")
            try:
                err = resp.json()
            except ValueError as e:
                raise DetectionError(f"{what} failed: malformed response (status: {resp.status_code})") from e
            message = err.get("error") if isinstance(err, dict) else None
            raise DetectionError(f"{what} failed: {message or resp.status_code}")

        if not text.strip():
            raise DetectionError(f"{what} failed: Server returned empty response")
        try:
            data = resp.json()
        except ValueError as e:
            raise DetectionError(f"{what} failed: malformed response ({e})") from e
        if not isinstance(data, dict):
            raise DetectionError(f"{what} failed: malformed response (expected object)")
        return data

    @staticmethod
    def _parse(model, data: dict, what: str):
        try:
            return model.from_json(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DetectionError(f"{what} failed: malformed response (missing or invalid {e})") from e

    def health_check(self) -> HealthResponse:
        data = self._request("GET", ENDPOINT_HEALTH, "Health check")
        return self._parse(HealthResponse, data, "Health check")

    def get_status(self) -> StatusResponse:
        data = self._request("GET", ENDPOINT_STATUS, "Status check")
        return self._parse(StatusResponse, data, "Status check")

    def detect_with_camera(self, tolerance: Optional[float] = None, off_angle: Optional[float] = None,
                           verbose: bool = False) -> DetectResponse:
        """Ask the service to capture a live frame and classify the stove."""
        body = _detect_body(use_camera=True, tolerance=tolerance, off_angle=off_angle, verbose=verbose)
        data = self._request("POST", ENDPOINT_DETECT, "Camera detection", body)
        return self._parse(DetectResponse, data, "Camera detection")

    def detect_image(self, image_path: str, tolerance: Optional[float] = None, off_angle: Optional[float] = None,
                     verbose: bool = False) -> DetectResponse:
        """Classify an image file already present on the service host."""
        body = _detect_body(image_path=image_path, tolerance=tolerance, off_angle=off_angle, verbose=verbose)
        data = self._request("POST", ENDPOINT_DETECT, "Detection", body)
        return self._parse(DetectResponse, data, "Detection")

    def health_check_safe(self) -> APIResult:
        try:
            return APIResult(data=self.health_check())
        except DetectionError as e:
            return APIResult(error=str(e))

    def get_status_safe(self) -> APIResult:
        try:
            return APIResult(data=self.get_status())
        except DetectionError as e:
            return APIResult(error=str(e))

    def detect_with_camera_safe(self, **kwargs) -> APIResult:
        try:
            return APIResult(data=self.detect_with_camera(**kwargs))
        except DetectionError as e:
            return APIResult(error=str(e))

    def detect_outcome(self, signatures: Sequence[str] = RETRYABLE_SIGNATURES, **kwargs) -> DetectionOutcome:
        """Run one camera detection and map it to a DetectionOutcome."""
        result = self.detect_with_camera_safe(**kwargs)
        if result.is_success:
            resp = result.data
            return DetectionSuccess(
                stove_is_on=resp.stove_is_on,
                on_knob_count=resp.summary.on_knobs,
                total_knob_count=resp.summary.total_knobs,
            )
        return DetectionFailure(message=result.error, retryable=is_retryable(result.error, signatures))

    def close(self):
        self._session.close()


def _detect_body(image_path: Optional[str] = None, use_camera: bool = False, tolerance: Optional[float] = None,
                 off_angle: Optional[float] = None, verbose: bool = False) -> dict:
    if image_path is None and not use_camera:
        raise ValueError("either image_path or use_camera is required")
    body: Dict[str, Any] = {"verbose": bool(verbose)}
    if image_path is not None:
        body["image_path"] = image_path
    if use_camera:
        body["use_camera"] = True
    if tolerance is not None:
        body["tolerance"] = tolerance
    if off_angle is not None:
        body["off_angle"] = off_angle
    return body
