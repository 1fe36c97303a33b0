import asyncio

import pytest

from fakes import FakeLedgerClient
from poolpayouts import main as main_module
from poolpayouts.config import PayoutSettings
from poolpayouts.ledger_client import LedgerConnectionError, Web3LedgerClient

VALID_KEY = "0x" + "11" * 32


def make_settings(tmp_path, **overrides) -> PayoutSettings:
    values = {
        "network": "1",
        "node_urls": ["http://localhost:8545"],
        "treasury_private_key": VALID_KEY,
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}",
    }
    values.update(overrides)
    return PayoutSettings(**values)


@pytest.fixture
def engine_env(monkeypatch, tmp_path):
    for name in ("POOL_NETWORK", "POOL_NODE_URLS", "POOL_PAYOUTS_CONFIG_PATH", "TREASURY_PRIVATE_KEY", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_main_exits_on_missing_configuration(engine_env):
    assert main_module.main() == 1


def test_main_exits_on_invalid_treasury_key(engine_env, tmp_path):
    engine_env.setenv("POOL_NETWORK", "1")
    engine_env.setenv("POOL_NODE_URLS", "http://localhost:8545")
    engine_env.setenv("TREASURY_PRIVATE_KEY", "0x1234")
    engine_env.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")

    assert main_module.main() == 1


def test_main_exits_on_non_numeric_network(engine_env, tmp_path):
    engine_env.setenv("POOL_NETWORK", "mainnet")
    engine_env.setenv("POOL_NODE_URLS", "http://localhost:8545")
    engine_env.setenv("TREASURY_PRIVATE_KEY", VALID_KEY)
    engine_env.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")

    assert main_module.main() == 1


def test_build_ledger_client_derives_pool_address(tmp_path):
    client = main_module.build_ledger_client(make_settings(tmp_path, dry_run=True, settling_delay_seconds=0))

    assert isinstance(client, Web3LedgerClient)
    assert client.address.startswith("0x")
    assert client.dry_run is True
    assert client.settling_delay_seconds == 0


def test_build_store_excludes_pool_and_treasury(tmp_path):
    store = main_module.build_store(make_settings(tmp_path, pool_addresses=["pool", "fees"]), "0xtreasury")

    assert store.excluded_addresses == ["pool", "fees", "0xtreasury"]
    asyncio.run(store.close())


@pytest.mark.anyio("asyncio")
async def test_run_propagates_connection_failure_and_cleans_up(tmp_path):
    client = FakeLedgerClient(ready=False)
    client.connect_error = LedgerConnectionError("No usable ledger node")

    with pytest.raises(LedgerConnectionError):
        await main_module.run(make_settings(tmp_path), client, asyncio.Event())

    assert client.closed


@pytest.mark.anyio("asyncio")
async def test_run_returns_when_stop_requested(tmp_path):
    client = FakeLedgerClient(ready=False)
    stop_event = asyncio.Event()
    stop_event.set()

    await asyncio.wait_for(main_module.run(make_settings(tmp_path), client, stop_event), timeout=5)

    assert client.closed
    assert client.submitted == []
