import pytest

from lendpool.config import PoolConfig
from lendpool.factory import PoolFactory
from lendpool.globals import ProtocolGlobals

ASSET = "USDC"
GOVERNOR = "gov"
ADMIN = "admin"
BORROWER = "borrower"
LOCKUP = 10


@pytest.fixture
def protocol():
    return ProtocolGlobals(GOVERNOR, admins=[ADMIN], valid_assets=[ASSET])


@pytest.fixture
def factory(protocol):
    return PoolFactory(protocol)


@pytest.fixture
def token(factory):
    return factory.token(ASSET)


@pytest.fixture
def pool_config():
    return PoolConfig(lockup_period=LOCKUP, min_investment=100, capacity=1_000_000, borrower=BORROWER)


@pytest.fixture
def regional(factory, pool_config):
    return factory.create_regional_pool(ADMIN, ASSET, pool_config, pool_id="regional_a")


@pytest.fixture
def blended(factory):
    return factory.create_blended_pool(ADMIN, ASSET, PoolConfig(borrower=None), pool_id="blended")


@pytest.fixture
def fund(token):
    def _fund(*accounts, amount=10_000):
        for account in accounts:
            token.mint(account, amount)
    return _fund


@pytest.fixture
def backed(regional, blended, fund):
    """Regional pool wired to a blended pool holding 5000 of liquidity."""
    regional.set_blended_pool(ADMIN, blended.pool_id)
    blended.add_pool(ADMIN, regional.pool_id)
    fund("lp", amount=5_000)
    blended.deposit("lp", 5_000)
    return regional, blended
