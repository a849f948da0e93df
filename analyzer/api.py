"""HTTP API over the confidential compute engine and the decryption boundary."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .codec import SCALES, Field as InputField
from .config import AnalyzerSettings
from .coprocessor import Coprocessor, DecryptionRequest
from .engine import ConfidentialComputeEngine
from .errors import AnalyzerError
from .handles import ADDRESS_PATTERN, CiphertextHandle, InputProof, normalize_address

logger = logging.getLogger(__name__)

HANDLE_PATTERN = r"^0x[a-fA-F0-9]{64}$"
PROOF_PATTERN = r"^0x[a-fA-F0-9]*$"
ADDRESS_REGEX = r"^0x[a-fA-F0-9]{40}$"


class ProtocolResponse(BaseModel):
    confidential_protocol_id: int
    chain_id: int
    contract_address: str
    decryption_verifying_contract: str
    max_assets: int
    scales: Dict[str, int]


class PortfolioPayload(BaseModel):
    balances: List[str]
    prices: List[str]
    proofs: List[str]
    asset_count: int = Field(ge=0, le=255)

    @field_validator("balances", "prices")
    @classmethod
    def validate_handles(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, HANDLE_PATTERN, "handle")

    @field_validator("proofs")
    @classmethod
    def validate_proofs(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, PROOF_PATTERN, "proof")


class PortfolioResponse(BaseModel):
    user: str
    asset_count: int
    last_update: int


class HandleResponse(BaseModel):
    handle: str


class RiskExposurePayload(BaseModel):
    volatilities: List[str]
    proofs: List[str]

    @field_validator("volatilities")
    @classmethod
    def validate_handles(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, HANDLE_PATTERN, "handle")

    @field_validator("proofs")
    @classmethod
    def validate_proofs(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, PROOF_PATTERN, "proof")


class RiskExposureResponse(BaseModel):
    handle: str
    scale: int


class ThresholdsPayload(BaseModel):
    value_threshold: str = Field(pattern=HANDLE_PATTERN)
    risk_threshold: str = Field(pattern=HANDLE_PATTERN)
    proofs: List[str] = Field(min_length=2, max_length=2)

    @field_validator("proofs")
    @classmethod
    def validate_proofs(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, PROOF_PATTERN, "proof")


class CheckThresholdsPayload(BaseModel):
    total_value: str = Field(pattern=HANDLE_PATTERN)
    risk_exposure: str = Field(pattern=HANDLE_PATTERN)
    proofs: List[str] = Field(min_length=2, max_length=2)

    @field_validator("proofs")
    @classmethod
    def validate_proofs(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, PROOF_PATTERN, "proof")


class CheckThresholdsResponse(BaseModel):
    alert_triggered: bool


class StressTestPayload(BaseModel):
    scenario: int = Field(ge=0, le=2)
    shock_prices: List[str]
    proofs: List[str]

    @field_validator("shock_prices")
    @classmethod
    def validate_handles(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, HANDLE_PATTERN, "handle")

    @field_validator("proofs")
    @classmethod
    def validate_proofs(cls, value: List[str]) -> List[str]:
        return _validate_hex_list(value, PROOF_PATTERN, "proof")


class StressTestResponse(BaseModel):
    scenario: int
    stressed_value: str
    var: str
    cvar: str
    var_scale: int
    cvar_scale: int


class UserStatusResponse(BaseModel):
    user: str
    asset_count: int
    last_update: int
    alert_triggered: bool
    thresholds_set: bool


class DecryptionHandlePayload(BaseModel):
    handle: str = Field(pattern=HANDLE_PATTERN)
    contract_address: str = Field(pattern=ADDRESS_REGEX)


class DecryptionSignaturePayload(BaseModel):
    private_key: str = Field(pattern=r"^0x[a-fA-F0-9]{64}$")
    public_key: str = Field(pattern=r"^0x[a-fA-F0-9]+$")
    signature: str = Field(pattern=r"^0x[a-fA-F0-9]+$")
    contract_addresses: List[str] = Field(min_length=1)
    user_address: str = Field(pattern=ADDRESS_REGEX)
    start_timestamp: int = Field(ge=0)
    duration_days: int = Field(ge=1)

    @field_validator("contract_addresses")
    @classmethod
    def validate_contracts(cls, value: List[str]) -> List[str]:
        for item in value:
            if not ADDRESS_PATTERN.match(item):
                raise ValueError("contract_addresses entries must be 20-byte hex addresses")
        return value


class DecryptPayload(BaseModel):
    handles: List[DecryptionHandlePayload] = Field(min_length=1)
    signature: DecryptionSignaturePayload


class DecryptResponse(BaseModel):
    values: Dict[str, Union[bool, int]]


class EventRecord(BaseModel):
    name: str
    user: str
    recorded_at: str
    timestamp: Optional[int] = None
    alert_type: Optional[str] = None
    scenario: Optional[int] = None


class EventsResponse(BaseModel):
    events: List[EventRecord]


def _validate_hex_list(value: List[str], pattern: str, label: str) -> List[str]:
    compiled = re.compile(pattern)
    for item in value:
        if not isinstance(item, str) or not compiled.match(item):
            raise ValueError(f"invalid {label}: {item!r}")
    return value


def _handles(values: List[str]) -> List[CiphertextHandle]:
    return [CiphertextHandle.from_hex(value) for value in values]


def _proofs(values: List[str]) -> List[InputProof]:
    return [InputProof.from_hex(value) for value in values]


def create_app(
    engine: ConfidentialComputeEngine,
    coprocessor: Coprocessor,
    settings: AnalyzerSettings,
) -> FastAPI:
    app = FastAPI(title="Confidential Portfolio Analyzer", version="1.0.0")

    chain_id = int(getattr(settings, "chain_id", 0) or 0)
    verifying_contract = str(getattr(settings, "decryption_verifying_contract", "") or "")

    def caller_address(x_caller_address: Optional[str] = Header(default=None)) -> str:
        if not x_caller_address:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Caller-Address header required")
        try:
            return normalize_address(x_caller_address)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Caller-Address")

    @app.exception_handler(AnalyzerError)
    async def analyzer_error_handler(_: Request, exc: AnalyzerError) -> JSONResponse:
        logger.info("Request rejected: %s (%s)", exc, type(exc).__name__)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.get("/api/protocol", response_model=ProtocolResponse)
    async def protocol() -> ProtocolResponse:
        return ProtocolResponse(
            confidential_protocol_id=engine.confidential_protocol_id,
            chain_id=chain_id,
            contract_address=engine.contract_address,
            decryption_verifying_contract=verifying_contract,
            max_assets=engine.max_assets,
            scales={field.value: scale for field, scale in SCALES.items()},
        )

    @app.post("/api/portfolio", response_model=PortfolioResponse)
    async def submit_portfolio(
        payload: PortfolioPayload, caller: str = Depends(caller_address)
    ) -> PortfolioResponse:
        record = engine.submit_portfolio(
            caller,
            _handles(payload.balances),
            _handles(payload.prices),
            _proofs(payload.proofs),
            payload.asset_count,
        )
        return PortfolioResponse(user=caller, asset_count=record.asset_count, last_update=record.last_update)

    @app.post("/api/portfolio/total-value", response_model=HandleResponse)
    async def total_value(caller: str = Depends(caller_address)) -> HandleResponse:
        return HandleResponse(handle=engine.calculate_total_value(caller).hex())

    @app.post("/api/portfolio/risk-exposure", response_model=RiskExposureResponse)
    async def risk_exposure(
        payload: RiskExposurePayload, caller: str = Depends(caller_address)
    ) -> RiskExposureResponse:
        handle = engine.calculate_risk_exposure(caller, _handles(payload.volatilities), _proofs(payload.proofs))
        return RiskExposureResponse(handle=handle.hex(), scale=SCALES[InputField.RISK_EXPOSURE])

    @app.post("/api/thresholds", response_model=UserStatusResponse)
    async def set_thresholds(
        payload: ThresholdsPayload, caller: str = Depends(caller_address)
    ) -> UserStatusResponse:
        engine.set_thresholds(
            caller,
            CiphertextHandle.from_hex(payload.value_threshold),
            CiphertextHandle.from_hex(payload.risk_threshold),
            _proofs(payload.proofs),
        )
        return _status_for(caller)

    @app.post("/api/thresholds/check", response_model=CheckThresholdsResponse)
    async def check_thresholds(
        payload: CheckThresholdsPayload, caller: str = Depends(caller_address)
    ) -> CheckThresholdsResponse:
        triggered = engine.check_thresholds(
            caller,
            CiphertextHandle.from_hex(payload.total_value),
            CiphertextHandle.from_hex(payload.risk_exposure),
            _proofs(payload.proofs),
        )
        return CheckThresholdsResponse(alert_triggered=triggered)

    @app.post("/api/stress-tests", response_model=StressTestResponse)
    async def stress_test(
        payload: StressTestPayload, caller: str = Depends(caller_address)
    ) -> StressTestResponse:
        result = engine.run_stress_test(
            caller,
            payload.scenario,
            _handles(payload.shock_prices),
            _proofs(payload.proofs),
        )
        return StressTestResponse(
            scenario=payload.scenario,
            stressed_value=result.stressed_value.hex(),
            var=result.var.hex(),
            cvar=result.cvar.hex(),
            var_scale=SCALES[InputField.VAR],
            cvar_scale=SCALES[InputField.CVAR],
        )

    def _status_for(user: str) -> UserStatusResponse:
        asset_count, last_update = engine.get_portfolio_metadata(user)
        return UserStatusResponse(
            user=user,
            asset_count=asset_count,
            last_update=last_update,
            alert_triggered=engine.get_alert_status(user),
            thresholds_set=engine.has_thresholds(user),
        )

    @app.get("/api/users/{address}", response_model=UserStatusResponse)
    async def user_status(address: str) -> UserStatusResponse:
        try:
            user = normalize_address(address)
        except ValueError:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid address")
        return _status_for(user)

    @app.post("/api/decrypt", response_model=DecryptResponse)
    async def decrypt(payload: DecryptPayload) -> DecryptResponse:
        signature = payload.signature
        values = coprocessor.user_decrypt(
            [
                DecryptionRequest(
                    handle=CiphertextHandle.from_hex(item.handle),
                    contract_address=item.contract_address,
                )
                for item in payload.handles
            ],
            private_key=signature.private_key,
            public_key=signature.public_key,
            signature=signature.signature,
            contract_addresses=signature.contract_addresses,
            user_address=signature.user_address,
            start_timestamp=signature.start_timestamp,
            duration_days=signature.duration_days,
        )
        return DecryptResponse(values=values)

    @app.get("/api/events", response_model=EventsResponse)
    async def events(
        user: Optional[str] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> EventsResponse:
        user_filter: Optional[str] = None
        if user:
            try:
                user_filter = normalize_address(user)
            except ValueError:
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid user filter")
        entries: List[Dict[str, Any]] = engine.events.recent(user=user_filter, limit=limit)
        return EventsResponse(events=[EventRecord(**entry) for entry in entries])

    return app


def run_api(app: FastAPI, settings: AnalyzerSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
