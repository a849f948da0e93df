#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

SCRIPT_ROOT = Path(__file__).resolve().parents[1]
if str(SCRIPT_ROOT) not in sys.path:
    sys.path.insert(0, str(SCRIPT_ROOT))

from analyzer.authorization import DecryptionSession  # noqa: E402
from analyzer.client import AnalyzerClient  # noqa: E402
from analyzer.codec import StressScenario  # noqa: E402
from analyzer.config import AnalyzerSettings  # noqa: E402
from analyzer.main import build_engine  # noqa: E402
from analyzer.signer import LocalSigner  # noqa: E402


def _numbers(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
    )

    parser = argparse.ArgumentParser(description="Demo: encrypted portfolio analytics end to end.")
    parser.add_argument("--private-key", default=os.environ.get("ANALYZER_DEMO_PRIVATE_KEY", "0x" + "11" * 32))
    parser.add_argument("--balances", default="100,50")
    parser.add_argument("--prices", default="50000,3000")
    parser.add_argument("--volatilities", default="0.1,0.15")
    parser.add_argument("--value-threshold", default="1000000")
    parser.add_argument("--risk-threshold", default="100000")
    parser.add_argument(
        "--scenario",
        type=int,
        choices=[int(item) for item in StressScenario],
        default=int(StressScenario.UNIFORM_DROP_30),
    )
    args = parser.parse_args()

    config = AnalyzerSettings()
    engine, coprocessor = build_engine(config)
    signer = LocalSigner.from_key(args.private_key)
    session = DecryptionSession(
        coprocessor,
        chain_id=config.chain_id,
        verifying_contract=config.decryption_verifying_contract,
        duration_days=config.decryption_duration_days,
    )
    client = AnalyzerClient(engine, coprocessor, signer, session=session)

    balances = _numbers(args.balances)
    prices = _numbers(args.prices)
    client.submit_portfolio(balances, prices)
    print(f"assets submitted: {engine.get_asset_count(signer.address)}")

    total = client.total_value()
    print(f"total value: {total:,}")

    risk = client.risk_exposure(_numbers(args.volatilities))
    print(f"risk exposure: {risk:,.2f}")

    client.set_thresholds(args.value_threshold, args.risk_threshold)
    triggered = client.check_thresholds(total, risk)
    print(f"threshold alert: {triggered}")

    report = client.stress_test(StressScenario(args.scenario), prices)
    print(f"stress scenario: {report.scenario.name}")
    print(f"stressed value: {report.stressed_value:,}")
    print(f"VaR: {report.value_at_risk:,.2f}")
    print(f"CVaR: {report.conditional_value_at_risk:,.2f}")


if __name__ == "__main__":
    main()
