"""Confidential compute engine: encrypted portfolio state plus homomorphic analytics.

Every public operation runs atomically with respect to one user's state (a
per-user lock) and never writes anything until all supplied proofs verify.
Arithmetic is delegated to the co-processor; the engine only composes
handles.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .codec import CVAR_SCALE, VAR_SCALE, StressScenario
from .coprocessor import Coprocessor
from .errors import (
    AssetCountMismatch,
    InvalidAssetCount,
    NoPortfolioFound,
    ProofVerificationFailed,
    ThresholdsNotSet,
    UnknownScenario,
    UnsupportedProtocol,
)
from .events import EventBus, PortfolioUpdated, StressTestCompleted, ThresholdAlert
from .handles import CiphertextHandle, InputProof, checksum_address, normalize_address
from .stores import AlertStore, PortfolioRecord, PortfolioStore, ThresholdRecord, ThresholdStore, UserLocks

logger = logging.getLogger(__name__)

VAR_CONFIDENCE_PERCENT = 90
THRESHOLD_ALERT_TYPE = "THRESHOLD_EXCEEDED"


@dataclass(frozen=True)
class StressTestResult:
    stressed_value: CiphertextHandle
    var: CiphertextHandle
    cvar: CiphertextHandle

    def handles(self) -> Tuple[CiphertextHandle, CiphertextHandle, CiphertextHandle]:
        return self.stressed_value, self.var, self.cvar


def var_rank(asset_count: int) -> int:
    """1-based order statistic used as VaR: ceil(0.9 * n)."""
    return max(1, (VAR_CONFIDENCE_PERCENT * asset_count + 99) // 100)


class ConfidentialComputeEngine:
    def __init__(
        self,
        coprocessor: Coprocessor,
        *,
        contract_address: str,
        max_assets: int,
        confidential_protocol_id: int,
        portfolios: Optional[PortfolioStore] = None,
        thresholds: Optional[ThresholdStore] = None,
        alerts: Optional[AlertStore] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if coprocessor.protocol_id != confidential_protocol_id:
            raise UnsupportedProtocol(
                f"co-processor protocol {coprocessor.protocol_id} is not the confidential "
                f"protocol {confidential_protocol_id}"
            )
        self.coprocessor = coprocessor
        self.contract_address = checksum_address(contract_address)
        self.max_assets = int(max_assets)
        self._protocol_id = int(confidential_protocol_id)
        self.portfolios = portfolios if portfolios is not None else PortfolioStore()
        self.thresholds = thresholds if thresholds is not None else ThresholdStore()
        self.alerts = alerts if alerts is not None else AlertStore()
        self.events = events if events is not None else EventBus()
        self._clock = clock or (lambda: int(time.time()))
        self._locks = UserLocks()

    @property
    def confidential_protocol_id(self) -> int:
        return self._protocol_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _verify(self, caller: str, handle: CiphertextHandle, proof: InputProof) -> CiphertextHandle:
        return self.coprocessor.verify_input(handle, proof, self.contract_address, caller)

    def _grant(self, caller: str, *handles: CiphertextHandle) -> None:
        for handle in handles:
            self.coprocessor.allow(handle, self.contract_address)
            self.coprocessor.allow(handle, caller)

    def _require_portfolio(self, caller: str) -> PortfolioRecord:
        portfolio = self.portfolios.get(caller)
        if portfolio is None or portfolio.asset_count == 0:
            raise NoPortfolioFound(f"no portfolio submitted for {caller}")
        return portfolio

    def _sum(self, terms: Sequence[CiphertextHandle]) -> CiphertextHandle:
        total = terms[0]
        for term in terms[1:]:
            total = self.coprocessor.add(total, term)
        return total

    def _sort_ascending(self, values: Sequence[CiphertextHandle]) -> List[CiphertextHandle]:
        """Odd-even transposition sort built from compare and select."""
        items = list(values)
        count = len(items)
        for round_index in range(count):
            for i in range(round_index % 2, count - 1, 2):
                left, right = items[i], items[i + 1]
                swap = self.coprocessor.gt(left, right)
                items[i] = self.coprocessor.select(swap, right, left)
                items[i + 1] = self.coprocessor.select(swap, left, right)
        return items

    # ------------------------------------------------------------------
    # State-mutating operations
    # ------------------------------------------------------------------
    def submit_portfolio(
        self,
        caller: str,
        balances: Sequence[CiphertextHandle],
        prices: Sequence[CiphertextHandle],
        proofs: Sequence[InputProof],
        asset_count: int,
    ) -> PortfolioRecord:
        user = normalize_address(caller)
        if asset_count < 1 or asset_count > self.max_assets:
            raise InvalidAssetCount(f"asset count must be within 1..{self.max_assets}, got {asset_count}")
        if len(balances) != asset_count or len(prices) != asset_count:
            raise AssetCountMismatch("balances and prices must each carry asset_count entries")
        if len(proofs) != 2 * asset_count:
            raise AssetCountMismatch(f"expected {2 * asset_count} proofs, got {len(proofs)}")

        with self._locks.for_user(user):
            verified_balances: List[CiphertextHandle] = []
            verified_prices: List[CiphertextHandle] = []
            for index in range(asset_count):
                verified_balances.append(self._verify(user, balances[index], proofs[2 * index]))
                verified_prices.append(self._verify(user, prices[index], proofs[2 * index + 1]))

            self._grant(user, *verified_balances, *verified_prices)
            record = self.portfolios.replace(
                user,
                PortfolioRecord(
                    asset_count=asset_count,
                    balances=tuple(verified_balances),
                    prices=tuple(verified_prices),
                    last_update=self._clock(),
                ),
            )
        logger.info("Portfolio submitted user=%s assets=%s", user, asset_count)
        self.events.emit(PortfolioUpdated(user=user, timestamp=record.last_update))
        return record

    def set_thresholds(
        self,
        caller: str,
        value_threshold: CiphertextHandle,
        risk_threshold: CiphertextHandle,
        proofs: Sequence[InputProof],
    ) -> ThresholdRecord:
        user = normalize_address(caller)
        if len(proofs) != 2:
            raise ProofVerificationFailed("thresholds require exactly two proofs")
        with self._locks.for_user(user):
            value_handle = self._verify(user, value_threshold, proofs[0])
            risk_handle = self._verify(user, risk_threshold, proofs[1])
            self._grant(user, value_handle, risk_handle)
            record = ThresholdRecord(value_threshold=value_handle, risk_threshold=risk_handle, is_set=True)
            self.thresholds.put(user, record)
        logger.info("Thresholds set user=%s", user)
        return record

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    def calculate_total_value(self, caller: str) -> CiphertextHandle:
        """Encrypted sum of balance * price over the caller's portfolio."""
        user = normalize_address(caller)
        with self._locks.for_user(user):
            portfolio = self._require_portfolio(user)
            terms = [
                self.coprocessor.mul(balance, price)
                for balance, price in zip(portfolio.balances, portfolio.prices)
            ]
            result = self._sum(terms)
            self._grant(user, result)
        logger.info("Total value computed user=%s handle=%s", user, result.short())
        return result

    def calculate_risk_exposure(
        self,
        caller: str,
        volatilities: Sequence[CiphertextHandle],
        proofs: Sequence[InputProof],
    ) -> CiphertextHandle:
        """Encrypted sum of balance * price * volatility.

        Volatilities arrive scaled by 1000, so the result is too; the decrypting
        client divides it back out.
        """
        user = normalize_address(caller)
        with self._locks.for_user(user):
            portfolio = self._require_portfolio(user)
            if len(volatilities) != portfolio.asset_count or len(proofs) != portfolio.asset_count:
                raise AssetCountMismatch(
                    f"expected {portfolio.asset_count} volatilities and proofs, "
                    f"got {len(volatilities)} and {len(proofs)}"
                )
            verified = [self._verify(user, handle, proof) for handle, proof in zip(volatilities, proofs)]
            terms = [
                self.coprocessor.mul(self.coprocessor.mul(balance, price), volatility)
                for balance, price, volatility in zip(portfolio.balances, portfolio.prices, verified)
            ]
            result = self._sum(terms)
            self._grant(user, result)
        logger.info("Risk exposure computed user=%s handle=%s", user, result.short())
        return result

    def check_thresholds(
        self,
        caller: str,
        total_value: CiphertextHandle,
        risk_exposure: CiphertextHandle,
        proofs: Sequence[InputProof],
    ) -> bool:
        """Compare fresh encrypted figures with the stored thresholds.

        Only the combined boolean is revealed. The alert flag follows the most
        recent check: set when triggered, cleared otherwise.
        """
        user = normalize_address(caller)
        with self._locks.for_user(user):
            thresholds = self.thresholds.get(user)
            if thresholds is None or not thresholds.is_set:
                raise ThresholdsNotSet(f"thresholds not configured for {user}")
            if len(proofs) != 2:
                raise ProofVerificationFailed("threshold check requires exactly two proofs")
            value_handle = self._verify(user, total_value, proofs[0])
            risk_handle = self._verify(user, risk_exposure, proofs[1])

            exceeds_value = self.coprocessor.gt(value_handle, thresholds.value_threshold)
            exceeds_risk = self.coprocessor.gt(risk_handle, thresholds.risk_threshold)
            triggered = self.coprocessor.reveal_bool(self.coprocessor.or_(exceeds_value, exceeds_risk))
            self.alerts.set(user, triggered)
        logger.info("Threshold check user=%s triggered=%s", user, triggered)
        if triggered:
            self.events.emit(ThresholdAlert(user=user, alert_type=THRESHOLD_ALERT_TYPE))
        return triggered

    def run_stress_test(
        self,
        caller: str,
        scenario: int,
        shock_prices: Sequence[CiphertextHandle],
        proofs: Sequence[InputProof],
    ) -> StressTestResult:
        """Project the portfolio under shocked prices and derive VaR / CVaR.

        Per-asset losses are `max(0, balance*price - balance*shock)`, sorted
        homomorphically. VaR is the ceil(0.9 * n)-th smallest loss and CVaR the
        mean of that loss and every larger one. VaR is returned scaled by 100
        and CVaR by 10, both as euint64 so the scaling cannot wrap.
        """
        try:
            chosen = StressScenario(int(scenario))
        except ValueError as exc:
            raise UnknownScenario(f"unknown stress scenario {scenario!r}") from exc
        user = normalize_address(caller)

        with self._locks.for_user(user):
            portfolio = self._require_portfolio(user)
            expected = 1 if chosen is StressScenario.SINGLE_ASSET_DROP_50 else portfolio.asset_count
            if len(shock_prices) != expected or len(proofs) != expected:
                raise AssetCountMismatch(
                    f"scenario {chosen.name} expects {expected} shock prices and proofs, "
                    f"got {len(shock_prices)} and {len(proofs)}"
                )
            verified = [self._verify(user, handle, proof) for handle, proof in zip(shock_prices, proofs)]
            stressed_prices = list(portfolio.prices)
            stressed_prices[: len(verified)] = verified

            cop = self.coprocessor
            baseline = [cop.mul(balance, price) for balance, price in zip(portfolio.balances, portfolio.prices)]
            stressed = [cop.mul(balance, price) for balance, price in zip(portfolio.balances, stressed_prices)]
            zero = cop.trivial(0)
            losses = [
                cop.select(cop.gt(before, after), cop.sub(before, after), zero)
                for before, after in zip(baseline, stressed)
            ]

            ordered = self._sort_ascending(losses)
            rank = var_rank(len(ordered))
            tail = [cop.as_euint64(loss) for loss in ordered[rank - 1 :]]
            var_handle = cop.mul_scalar(tail[0], VAR_SCALE)
            cvar_handle = cop.div_scalar(cop.mul_scalar(self._sum(tail), CVAR_SCALE), len(tail))

            result = StressTestResult(
                stressed_value=self._sum(stressed),
                var=var_handle,
                cvar=cvar_handle,
            )
            self._grant(user, *result.handles())
        logger.info("Stress test user=%s scenario=%s", user, chosen.name)
        self.events.emit(StressTestCompleted(user=user, scenario=int(chosen)))
        return result

    # ------------------------------------------------------------------
    # Plaintext metadata
    # ------------------------------------------------------------------
    def get_asset_count(self, user: str) -> int:
        portfolio = self.portfolios.get(user)
        return portfolio.asset_count if portfolio else 0

    def get_alert_status(self, user: str) -> bool:
        return self.alerts.get(user)

    def get_portfolio_metadata(self, user: str) -> Tuple[int, int]:
        portfolio = self.portfolios.get(user)
        if portfolio is None:
            return 0, 0
        return portfolio.asset_count, portfolio.last_update

    def has_thresholds(self, user: str) -> bool:
        return self.thresholds.is_set(user)
