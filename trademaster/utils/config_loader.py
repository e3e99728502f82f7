"""
Configuration loader and manager
"""

import os
import yaml
from typing import Dict, Any, Optional
from dataclasses import dataclass
import logging

logger = logging.getLogger(__name__)


# Chart timeframes in minutes
TIMEFRAME_MINUTES: Dict[str, int] = {
    "M1": 1,
    "M5": 5,
    "M15": 15,
    "M30": 30,
    "H1": 60,
    "H4": 240,
    "D1": 1440,
    "W1": 10080,
}


@dataclass
class ConnectionConfig:
    """Host connection and reconnection configuration"""
    transport: str = "simulated"
    url: str = ""
    client_name: str = "TradeMaster"
    connect_timeout_ms: int = 30000
    reconnect_interval_ms: int = 5000
    max_reconnect_attempts: int = 5
    heartbeat_interval_ms: int = 30000
    backoff_multiplier: float = 2.0
    max_reconnect_delay_ms: int = 60000


@dataclass
class ChartConfig:
    """Chart series and indicator configuration"""
    default_symbol: str = "EURUSD"
    default_timeframe: str = "M5"
    max_points: int = 1000
    redraw_interval_ms: int = 1000
    history_points: int = 100
    sma_period: int = 20
    ema_period: int = 12
    bollinger_period: int = 20
    bollinger_k: float = 2.0
    incremental: bool = True


@dataclass
class TradingConfig:
    """Order volume configuration"""
    default_volume: float = 0.01
    min_volume: float = 0.01
    max_volume: float = 100.0
    volume_step: float = 0.01
    confirmation_threshold: float = 1.0
    contract_size: float = 100000
    leverage: float = 100


@dataclass
class RiskConfig:
    """Risk management configuration"""
    default_risk_percent: float = 1.0
    max_risk_percent: float = 5.0
    max_positions: int = 10


@dataclass
class SimulationConfig:
    """Simulated host configuration"""
    balance: float = 10000.0
    seed_positions: bool = True
    quote_interval_ms: int = 1000


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None
    trade_log_dir: Optional[str] = None
    max_size_mb: int = 20
    backup_count: int = 5


class ConfigManager:
    """Manages system configuration"""

    def __init__(self, config_path: str = None):
        self.config_path = config_path or self._find_config()
        self._raw_config: Dict = {}
        self._load_config()

    def _find_config(self) -> str:
        """Find configuration file"""
        possible_paths = [
            "config/settings.yaml",
            "../config/settings.yaml",
            "settings.yaml",
            os.path.expanduser("~/.trademaster/settings.yaml")
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return "config/settings.yaml"

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            if os.path.exists(self.config_path):
                with open(self.config_path, 'r') as f:
                    self._raw_config = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.config_path}")
            else:
                logger.warning(f"Config file not found: {self.config_path}, using defaults")
                self._raw_config = {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading config: {e}")
            self._raw_config = {}

        if not isinstance(self._raw_config, dict):
            logger.error(f"Config root must be a mapping, got {type(self._raw_config).__name__}")
            self._raw_config = {}

    @classmethod
    def from_dict(cls, raw: Dict) -> "ConfigManager":
        """Build a manager from an in-memory mapping (no file access)"""
        manager = cls.__new__(cls)
        manager.config_path = None
        manager._raw_config = dict(raw or {})
        return manager

    def _resolve_env_vars(self, value: Any) -> Any:
        """Resolve environment variables in config values"""
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            env_var = value[2:-1]
            return os.getenv(env_var, "")
        return value

    def _section(self, name: str) -> Dict:
        cfg = self._raw_config.get(name) or {}
        return {k: self._resolve_env_vars(v) for k, v in cfg.items()}

    @property
    def connection(self) -> ConnectionConfig:
        """Get connection configuration"""
        cfg = self._section("connection")
        return ConnectionConfig(
            transport=str(cfg.get("transport", "simulated")).lower(),
            url=cfg.get("url") or "",
            client_name=cfg.get("client_name", "TradeMaster"),
            connect_timeout_ms=int(cfg.get("connect_timeout_ms", 30000)),
            reconnect_interval_ms=int(cfg.get("reconnect_interval_ms", 5000)),
            max_reconnect_attempts=int(cfg.get("max_reconnect_attempts", 5)),
            heartbeat_interval_ms=int(cfg.get("heartbeat_interval_ms", 30000)),
            backoff_multiplier=float(cfg.get("backoff_multiplier", 2.0)),
            max_reconnect_delay_ms=int(cfg.get("max_reconnect_delay_ms", 60000))
        )

    @property
    def chart(self) -> ChartConfig:
        """Get chart configuration"""
        cfg = self._section("chart")
        timeframe = str(cfg.get("default_timeframe", "M5")).upper()
        if timeframe not in TIMEFRAME_MINUTES:
            logger.warning(f"Unknown timeframe {timeframe}, falling back to M5")
            timeframe = "M5"
        return ChartConfig(
            default_symbol=str(cfg.get("default_symbol", "EURUSD")).upper(),
            default_timeframe=timeframe,
            max_points=int(cfg.get("max_points", 1000)),
            redraw_interval_ms=int(cfg.get("redraw_interval_ms", 1000)),
            history_points=int(cfg.get("history_points", 100)),
            sma_period=int(cfg.get("sma_period", 20)),
            ema_period=int(cfg.get("ema_period", 12)),
            bollinger_period=int(cfg.get("bollinger_period", 20)),
            bollinger_k=float(cfg.get("bollinger_k", 2.0)),
            incremental=bool(cfg.get("incremental", True))
        )

    @property
    def trading(self) -> TradingConfig:
        """Get trading configuration"""
        cfg = self._section("trading")
        return TradingConfig(
            default_volume=float(cfg.get("default_volume", 0.01)),
            min_volume=float(cfg.get("min_volume", 0.01)),
            max_volume=float(cfg.get("max_volume", 100.0)),
            volume_step=float(cfg.get("volume_step", 0.01)),
            confirmation_threshold=float(cfg.get("confirmation_threshold", 1.0)),
            contract_size=float(cfg.get("contract_size", 100000)),
            leverage=float(cfg.get("leverage", 100))
        )

    @property
    def risk(self) -> RiskConfig:
        """Get risk management configuration"""
        cfg = self._section("risk")
        return RiskConfig(
            default_risk_percent=float(cfg.get("default_risk_percent", 1.0)),
            max_risk_percent=float(cfg.get("max_risk_percent", 5.0)),
            max_positions=int(cfg.get("max_positions", 10))
        )

    @property
    def simulation(self) -> SimulationConfig:
        cfg = self._section("simulation")
        return SimulationConfig(
            balance=float(cfg.get("balance", 10000.0)),
            seed_positions=bool(cfg.get("seed_positions", True)),
            quote_interval_ms=int(cfg.get("quote_interval_ms", 1000))
        )

    @property
    def logging(self) -> LoggingConfig:
        cfg = self._section("logging")
        return LoggingConfig(
            level=str(cfg.get("level", "INFO")).upper(),
            file=cfg.get("file") or None,
            trade_log_dir=cfg.get("trade_log_dir") or None,
            max_size_mb=int(cfg.get("max_size_mb", 20)),
            backup_count=int(cfg.get("backup_count", 5))
        )

    def save(self) -> None:
        """Save configuration to file"""
        try:
            directory = os.path.dirname(self.config_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self.config_path, 'w') as f:
                yaml.dump(self._raw_config, f, default_flow_style=False)
            logger.info(f"Saved configuration to {self.config_path}")
        except OSError as e:
            logger.error(f"Error saving config: {e}")

    def update(self, section: str, key: str, value: Any) -> None:
        """Update a configuration value"""
        if not isinstance(self._raw_config.get(section), dict):
            self._raw_config[section] = {}
        self._raw_config[section][key] = value
