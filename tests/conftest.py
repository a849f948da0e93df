import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("ANALYZER_CONTRACT_ADDRESS", "0x844a256728c380a1825FbEEbE5cb01c72bac971A")
os.environ.setdefault("ANALYZER_CHAIN_ID", "11155111")
os.environ.setdefault("ANALYZER_PERSIST_STATE", "false")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from analyzer.authorization import DecryptionSession  # noqa: E402
from analyzer.client import AnalyzerClient  # noqa: E402
from analyzer.coprocessor import LocalCoprocessor  # noqa: E402
from analyzer.engine import ConfidentialComputeEngine  # noqa: E402
from analyzer.signer import LocalSigner  # noqa: E402

CONTRACT = "0x844a256728c380a1825FbEEbE5cb01c72bac971A"
VERIFYING_CONTRACT = "0x5d8bd78e2ea6bbe41f26dfe9fdaeaa349e077478"
CHAIN_ID = 11155111
PROTOCOL_ID = 10001
ALICE_KEY = "0x" + "11" * 32
BOB_KEY = "0x" + "22" * 32


class FakeClock:
    def __init__(self, now: int = 1_700_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def coprocessor(clock):
    return LocalCoprocessor(
        protocol_id=PROTOCOL_ID,
        chain_id=CHAIN_ID,
        decryption_verifying_contract=VERIFYING_CONTRACT,
        clock=clock,
    )


@pytest.fixture()
def engine(coprocessor, clock):
    return ConfidentialComputeEngine(
        coprocessor,
        contract_address=CONTRACT,
        max_assets=10,
        confidential_protocol_id=PROTOCOL_ID,
        clock=clock,
    )


@pytest.fixture()
def alice():
    return LocalSigner.from_key(ALICE_KEY)


@pytest.fixture()
def bob():
    return LocalSigner.from_key(BOB_KEY)


def make_session(coprocessor, clock):
    return DecryptionSession(
        coprocessor,
        chain_id=CHAIN_ID,
        verifying_contract=VERIFYING_CONTRACT,
        clock=clock,
    )


@pytest.fixture()
def session(coprocessor, clock):
    return make_session(coprocessor, clock)


@pytest.fixture()
def client(engine, coprocessor, alice, session):
    return AnalyzerClient(engine, coprocessor, alice, session=session)
