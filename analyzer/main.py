"""Service entrypoint for the confidential portfolio analyzer."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

from .api import create_app, run_api
from .config import AnalyzerSettings, settings
from .coprocessor import LocalCoprocessor
from .engine import ConfidentialComputeEngine
from .errors import UnsupportedProtocol
from .events import EventBus
from .stores import AlertStore, PortfolioStore, ThresholdStore


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def _journal_path(config: AnalyzerSettings) -> Optional[Path]:
    if config.events_journal_path is not None:
        return Path(config.events_journal_path)
    if config.persist_state:
        return config.data_dir / "events.log"
    return None


def build_engine(config: AnalyzerSettings) -> Tuple[ConfidentialComputeEngine, LocalCoprocessor]:
    coprocessor = LocalCoprocessor(
        protocol_id=config.confidential_protocol_id,
        chain_id=config.chain_id,
        decryption_verifying_contract=config.decryption_verifying_contract,
        secret=config.secret_bytes(),
    )
    engine = ConfidentialComputeEngine(
        coprocessor,
        contract_address=config.contract_address,
        max_assets=config.max_assets,
        confidential_protocol_id=config.confidential_protocol_id,
        portfolios=PortfolioStore(config.store_path("portfolios")),
        thresholds=ThresholdStore(config.store_path("thresholds")),
        alerts=AlertStore(config.store_path("alerts")),
        events=EventBus(_journal_path(config)),
    )
    return engine, coprocessor


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting confidential portfolio analyzer")
    try:
        engine, coprocessor = build_engine(settings)
    except UnsupportedProtocol as exc:
        logger.error("Refusing to start: %s", exc)
        raise SystemExit(2) from exc
    if settings.persist_state:
        logger.warning(
            "State persistence is enabled but the local co-processor keeps ciphertexts in memory; "
            "persisted handles only resolve while this process runs"
        )
    logger.info(
        "Engine ready contract=%s chain=%s protocol=%s max_assets=%s",
        engine.contract_address,
        settings.chain_id,
        engine.confidential_protocol_id,
        engine.max_assets,
    )

    app = create_app(engine, coprocessor, settings)
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    run_api(app, settings)


if __name__ == "__main__":
    main()
