"""Client-side flow: encode inputs, call the engine, authorize and decrypt results.

Mirrors what a wallet-connected front-end does for one user. Decrypted
results are converted back from their fixed-point scales here, at the API
boundary, using the codec's scale constants.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Sequence

from .authorization import DecryptionSession, DecryptionSignature, SignatureCache, load_or_sign
from .cache import SingleFlightCache
from .codec import EncryptedInputCodec, Field, Number, StressScenario, decode
from .coprocessor import Coprocessor, DecryptedValue, requests_for
from .engine import ConfidentialComputeEngine, StressTestResult
from .errors import AuthorizationDeclined
from .handles import CiphertextHandle
from .signer import Signer
from .stores import PortfolioRecord, ThresholdRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StressTestReport:
    scenario: StressScenario
    stressed_value: int
    value_at_risk: Decimal
    conditional_value_at_risk: Decimal


def user_decrypt(
    coprocessor: Coprocessor,
    signature: DecryptionSignature,
    handles: Sequence[CiphertextHandle],
    contract_address: str,
) -> Dict[str, DecryptedValue]:
    return coprocessor.user_decrypt(
        requests_for(handles, contract_address),
        private_key=signature.private_key,
        public_key=signature.public_key,
        signature=signature.signature,
        contract_addresses=signature.contract_addresses,
        user_address=signature.user_address,
        start_timestamp=signature.start_timestamp,
        duration_days=signature.duration_days,
    )


class AnalyzerClient:
    def __init__(
        self,
        engine: ConfidentialComputeEngine,
        coprocessor: Coprocessor,
        signer: Signer,
        *,
        session: DecryptionSession,
        cache: Optional[SignatureCache] = None,
    ) -> None:
        self.engine = engine
        self.coprocessor = coprocessor
        self.signer = signer
        self.session = session
        self.cache = cache if cache is not None else SingleFlightCache()
        self.contract_address = engine.contract_address
        self.codec = EncryptedInputCodec(coprocessor, self.contract_address, signer.address)

    @property
    def user(self) -> str:
        return self.signer.address

    # ------------------------------------------------------------------
    # Engine calls
    # ------------------------------------------------------------------
    def submit_portfolio(self, balances: Sequence[Number], prices: Sequence[Number]) -> PortfolioRecord:
        balance_batch, price_batch, proofs = self.codec.encode_portfolio(balances, prices)
        return self.engine.submit_portfolio(
            self.user,
            balance_batch.handles,
            price_batch.handles,
            proofs,
            len(balance_batch),
        )

    def set_thresholds(self, value_threshold: Number, risk_threshold: Number) -> ThresholdRecord:
        batch = self.codec.encode_thresholds(value_threshold, risk_threshold)
        return self.engine.set_thresholds(self.user, batch.handles[0], batch.handles[1], batch.proofs)

    def calculate_total_value(self) -> CiphertextHandle:
        return self.engine.calculate_total_value(self.user)

    def calculate_risk_exposure(self, volatilities: Sequence[Number]) -> CiphertextHandle:
        batch = self.codec.encode_many(volatilities, Field.VOLATILITY)
        return self.engine.calculate_risk_exposure(self.user, batch.handles, batch.proofs)

    def check_thresholds(self, total_value: Number, risk_exposure: Number) -> bool:
        """`risk_exposure` is the descaled figure; it is re-scaled by 1000 to match the stored risk threshold."""
        value_handle, value_proof = self.codec.encode(total_value, Field.TOTAL_VALUE)
        risk_handle, risk_proof = self.codec.encode(risk_exposure, Field.RISK_EXPOSURE)
        return self.engine.check_thresholds(self.user, value_handle, risk_handle, [value_proof, risk_proof])

    def run_stress_test(self, scenario: StressScenario, prices: Sequence[Number]) -> StressTestResult:
        batch = self.codec.encode_shock_prices(scenario, prices)
        return self.engine.run_stress_test(self.user, scenario, batch.handles, batch.proofs)

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------
    def authorize(self) -> DecryptionSignature:
        signature = load_or_sign(self.session, [self.contract_address], self.signer, self.cache)
        if signature is None:
            raise AuthorizationDeclined("decryption aborted: no signature available")
        return signature

    def decrypt(self, handles: Sequence[CiphertextHandle]) -> Dict[str, DecryptedValue]:
        signature = self.authorize()
        return user_decrypt(self.coprocessor, signature, handles, self.contract_address)

    def total_value(self) -> int:
        handle = self.calculate_total_value()
        return int(self.decrypt([handle])[handle.hex()])

    def risk_exposure(self, volatilities: Sequence[Number]) -> Decimal:
        handle = self.calculate_risk_exposure(volatilities)
        return decode(Field.RISK_EXPOSURE, int(self.decrypt([handle])[handle.hex()]))

    def stress_test(self, scenario: StressScenario, prices: Sequence[Number]) -> StressTestReport:
        scenario = StressScenario(scenario)
        result = self.run_stress_test(scenario, prices)
        values = self.decrypt(result.handles())
        return StressTestReport(
            scenario=scenario,
            stressed_value=int(decode(Field.STRESSED_VALUE, int(values[result.stressed_value.hex()]))),
            value_at_risk=decode(Field.VAR, int(values[result.var.hex()])),
            conditional_value_at_risk=decode(Field.CVAR, int(values[result.cvar.hex()])),
        )
