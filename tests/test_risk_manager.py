import pytest

from trademaster.core.risk_manager import RiskManager, TradeRequest
from trademaster.core.transport import AccountSnapshot, TradeSide
from trademaster.utils.config_loader import RiskConfig, TradingConfig


@pytest.fixture
def risk():
    return RiskManager(max_positions=10, max_risk_percent=5.0, contract_size=100000, leverage=100)


@pytest.fixture
def account():
    return AccountSnapshot(balance=10000.0, equity=10000.0, margin=0.0, free_margin=10000.0)


def _request(volume=0.1, price=1.1, stop_loss=None, side=TradeSide.BUY):
    return TradeRequest(symbol="EURUSD", side=side, volume=volume, price=price, stop_loss=stop_loss)


def test_allows_trade_within_limits(risk, account):
    check = risk.check_trade(_request(stop_loss=1.095), account, 0)

    assert check.allowed
    assert check.required_margin == pytest.approx(110.0)
    assert check.risk_amount == pytest.approx(50.0)
    assert check.risk_percent == pytest.approx(0.5)


def test_max_positions_checked_first(risk, account):
    check = risk.check_trade(_request(volume=50, stop_loss=0.5), account, 10)

    assert not check.allowed
    assert check.reason == "Maximum positions limit reached (10)"


def test_insufficient_margin(risk, account):
    check = risk.check_trade(_request(volume=10), account, 0)

    assert not check.allowed
    assert check.reason == "Insufficient margin"
    assert check.required_margin == pytest.approx(11000.0)


def test_risk_too_high(risk, account):
    check = risk.check_trade(_request(volume=1.0, price=1.1, stop_loss=1.09), account, 0)

    assert not check.allowed
    assert check.reason == "Risk too high (10.00% > 5%)"
    assert check.risk_percent == pytest.approx(10.0)


def test_no_stop_loss_skips_risk_percent(risk, account):
    assert risk.check_trade(_request(volume=1.0), account, 0).allowed


def test_check_counts_rejections_by_rule(risk, account):
    risk.check_trade(_request(volume=10), account, 0)
    risk.check_trade(_request(volume=10), account, 0)

    assert risk.get_stats()["rejections"] == {"margin": 2}
    assert risk.checks == 2


def test_suggest_volume_uses_same_risk_formula(risk):
    # 1% of 10000 = 100; distance 0.0020 * 100000 = 200 per lot
    volume = risk.suggest_volume(10000.0, 1.1000, 1.0980, risk_percent=1.0)
    assert volume == pytest.approx(0.5)

    check = risk.check_trade(
        _request(volume=volume, price=1.1000, stop_loss=1.0980),
        AccountSnapshot(balance=10000.0, equity=10000.0, margin=0.0, free_margin=10000.0),
        0
    )
    assert check.risk_percent == pytest.approx(1.0)


def test_suggest_volume_rounds_down_and_clamps(risk):
    assert risk.suggest_volume(10000.0, 1.1, 1.0970, 1.0) == pytest.approx(0.33)
    assert risk.suggest_volume(10.0, 1.1, 1.0, 1.0) == pytest.approx(0.01)
    assert risk.suggest_volume(10000.0, 1.1, 1.1, 1.0) == pytest.approx(0.01)
    assert risk.suggest_volume(10_000_000.0, 1.1, 1.0999, 5.0) == pytest.approx(100.0)


def test_position_pnl_direction(risk):
    assert risk.position_pnl(TradeSide.BUY, 1.1, 1.101, 1.0) == pytest.approx(100.0)
    assert risk.position_pnl(TradeSide.SELL, 1.1, 1.101, 1.0) == pytest.approx(-100.0)


def test_from_config():
    risk = RiskManager.from_config(RiskConfig(max_positions=3), TradingConfig(leverage=50))
    assert risk.max_positions == 3
    assert risk.leverage == 50
