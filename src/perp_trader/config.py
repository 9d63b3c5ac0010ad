"""交易员配置 - 环境变量与 .env 文件中的运行、风控、行情与存储参数。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """交易执行方式。"""

    PAPER = "paper"  # 模拟账户，行情来自 Binance
    LIVE = "live"  # Binance 合约实盘


class LogFormat(str, Enum):
    """日志渲染格式。"""

    JSON = "json"
    CONSOLE = "console"


class OracleProvider(str, Enum):
    """决策模型提供方。"""

    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"
    QWEN = "qwen"
    HEURISTIC = "heuristic"  # 离线确定性规则


class CoinSelectionMode(str, Enum):
    """候选币池模式。"""

    DEFAULT = "default"
    ADVANCED = "advanced"


class Settings(BaseSettings):
    """单个交易员的全部配置。

    字段名即环境变量名（不区分大小写），风控字段通过
    ``RiskLimits.from_settings`` 交给风控闸门。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")
    trader_id: str = Field(
        default="default",
        pattern=r"^[A-Za-z0-9_\-]+$",
        description="交易员 ID（账本命名空间）",
    )

    # ==================== Binance API ====================
    binance_api_key: str = Field(default="", description="Binance API Key")
    binance_api_secret: str = Field(default="", description="Binance API Secret")
    binance_testnet: bool = Field(default=True, description="是否使用 Binance 测试网")
    binance_timeout: int = Field(default=10, ge=1, le=60, description="交易所请求超时（秒）")

    # ==================== 决策模型 ====================
    oracle_provider: OracleProvider = Field(
        default=OracleProvider.OPENROUTER,
        description="决策模型提供方",
    )
    llm_api_key: str = Field(default="", description="LLM API Key")
    llm_base_url: str = Field(default="", description="OpenAI 兼容接口地址，留空使用提供方默认值")
    llm_model: str = Field(default="", description="模型名称，留空使用提供方默认值")
    llm_timeout: int = Field(default=60, ge=5, le=300, description="LLM 调用超时（秒）")
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="采样温度")
    llm_max_tokens: int = Field(default=4000, ge=256, le=32000, description="最大输出 token")

    # ==================== 风控参数 ====================
    max_positions: int = Field(default=5, ge=1, le=50, description="最大持仓数")
    max_leverage_major: int = Field(default=50, ge=1, le=125, description="主流币最大杠杆")
    max_leverage_altcoin: int = Field(default=20, ge=1, le=125, description="山寨币最大杠杆")
    max_position_size_major_multiplier: float = Field(
        default=10.0,
        gt=0.0,
        le=100.0,
        description="主流币单仓名义价值上限（净值倍数）",
    )
    max_position_size_altcoin_multiplier: float = Field(
        default=1.5,
        gt=0.0,
        le=100.0,
        description="山寨币单仓名义价值上限（净值倍数）",
    )
    max_margin_usage: float = Field(
        default=0.9,
        gt=0.0,
        le=1.0,
        description="保证金使用率上限（0-1）",
    )
    min_risk_reward_ratio: float = Field(
        default=2.0,
        ge=0.0,
        le=20.0,
        description="最小盈亏比",
    )
    major_symbols: str = Field(
        default="BTCUSDT,ETHUSDT,BTCUSD,ETHUSD",
        description="主流币白名单（逗号分隔）",
    )

    # ==================== 行情参数 ====================
    min_liquidity_usd: float = Field(
        default=15_000_000.0,
        ge=0.0,
        description="持仓量流动性下限（USD）",
    )
    coin_selection_mode: CoinSelectionMode = Field(
        default=CoinSelectionMode.DEFAULT,
        description="候选币池模式",
    )
    market_data_workers: int = Field(default=8, ge=1, le=64, description="行情并发拉取线程数")

    # ==================== 决策循环 ====================
    decision_interval_sec: int = Field(
        default=180,
        ge=10,
        le=3600,
        description="决策循环间隔（秒）",
    )
    historical_trades_count: int = Field(
        default=20,
        ge=1,
        le=500,
        description="历史反馈统计的平仓笔数",
    )
    order_delay_ms: int = Field(default=500, ge=0, le=10_000, description="订单间隔（毫秒）")
    default_leverage: int = Field(default=1, ge=1, le=125, description="决策未给出杠杆时的默认值")
    min_open_confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="开仓最低置信度（0 表示不过滤）",
    )
    min_close_confidence: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="平仓最低置信度（0 表示不过滤）",
    )

    # ==================== 纸交易 ====================
    paper_initial_equity: float = Field(default=10_000.0, gt=0.0, description="纸交易初始净值")
    paper_slippage_bps: float = Field(default=2.0, ge=0.0, le=100.0, description="纸交易滑点（bps）")

    # ==================== 日志配置 ====================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="日志级别",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="日志输出格式",
    )

    # ==================== 数据存储 ====================
    data_dir: Path = Field(default=Path("data"), description="本地数据目录")
    journal_dir: Path = Field(
        default=Path("data/decision_logs"),
        description="决策周期日志存储目录",
    )
    database_url: str = Field(default="", description="账本数据库 URL，留空使用 data_dir 下的 SQLite")

    @field_validator("data_dir", "journal_dir", mode="before")
    @classmethod
    def parse_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @property
    def major_symbol_set(self) -> frozenset[str]:
        """主流币集合（大写）。"""
        return frozenset(
            item.strip().upper() for item in self.major_symbols.split(",") if item.strip()
        )

    def ensure_directories(self) -> None:
        """创建数据目录与周期日志目录。"""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def resolved_database_url(self) -> str:
        """账本数据库 URL。"""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'performance.db'}"

    @property
    def is_paper_mode(self) -> bool:
        """是否为纸交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """实盘运行前检查必需的密钥，返回缺失的环境变量名。"""
        missing: list[str] = []
        if not self.binance_api_key:
            missing.append("BINANCE_API_KEY")
        if not self.binance_api_secret:
            missing.append("BINANCE_API_SECRET")
        if self.oracle_provider != OracleProvider.HEURISTIC and not self.llm_api_key:
            missing.append("LLM_API_KEY")
        return missing


# 进程级配置，首次访问时加载
_settings: Settings | None = None


def get_settings() -> Settings:
    """返回进程级配置，首次调用时从环境加载。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """丢弃缓存并重新读取环境变量。"""
    global _settings
    _settings = Settings()
    return _settings
