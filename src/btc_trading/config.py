"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunMode(str, Enum):
    """运行模式枚举。"""

    PAPER = "paper"  # 模拟交易
    LIVE = "live"  # 实盘（BingX）


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


class PolicyVariant(str, Enum):
    """AI 仓位策略变体。"""

    SIMULATED = "simulated"
    BINGX = "bingx"
    BINGX_AGGRESSIVE = "bingx_aggressive"


class Settings(BaseSettings):
    """系统配置设置。

    从环境变量和 .env 文件加载配置。
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==================== 运行模式 ====================
    mode: RunMode = Field(default=RunMode.PAPER, description="运行模式: paper 或 live")

    # ==================== 行情数据 ====================
    symbol: str = Field(default="BTCUSDT", description="行情交易对")
    primary_interval: str = Field(default="15m", description="主图 K 线周期")
    analysis_intervals: str = Field(
        default="15m,1h,4h,1d",
        description="AI 多周期分析使用的 K 线周期（逗号分隔）",
    )
    kline_limit: int = Field(default=500, ge=50, le=1000, description="每次拉取的 K 线数量")
    candle_store_capacity: int = Field(
        default=500,
        ge=50,
        le=5000,
        description="K 线缓存最大保留数量",
    )

    # ==================== OpenAI API ====================
    openai_api_key: str = Field(default="", description="OpenAI API Key")
    openai_model: str = Field(default="gpt-4", description="OpenAI 模型名称")
    openai_timeout: int = Field(default=30, ge=1, le=300, description="LLM 调用超时（秒）")
    openai_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="采样温度")
    openai_max_tokens: int = Field(default=3000, ge=100, le=8000, description="最大输出 token")

    # ==================== BingX API ====================
    bingx_api_key: str = Field(default="", description="BingX API Key")
    bingx_secret_key: str = Field(default="", description="BingX Secret Key")
    order_symbol: str = Field(default="BTC-USDT", description="BingX 永续合约交易对")

    # ==================== EMA 事件检测 ====================
    ema_touch_tolerance: float = Field(
        default=0.002,
        gt=0.0,
        le=0.05,
        description="判定触碰 EMA 的相对距离阈值",
    )
    ema_event_cooldown_sec: int = Field(
        default=300,
        ge=0,
        le=86_400,
        description="同一条 EMA 两次事件之间的冷却时间（秒）",
    )
    trading_mark_min_confidence: float = Field(
        default=70.0,
        ge=0.0,
        le=100.0,
        description="事件转为交易标记所需的最低置信度",
    )

    # ==================== AI 策略参数 ====================
    policy_variant: PolicyVariant = Field(
        default=PolicyVariant.SIMULATED,
        description="AI 仓位策略变体",
    )
    min_position_amount: float = Field(
        default=11.73,
        gt=0.0,
        description="最小下单金额（USDT，BingX 要求）",
    )
    max_position_amount: float = Field(
        default=15.0,
        gt=0.0,
        description="最大下单金额（USDT）",
    )
    auto_trading: bool = Field(default=False, description="是否自动执行 AI 决策")

    # ==================== 账户 ====================
    initial_balance: float = Field(default=500.0, ge=0.0, description="模拟账户初始余额")

    # ==================== 调度 ====================
    price_poll_sec: float = Field(default=5.0, ge=1.0, le=60.0, description="价格轮询间隔（秒）")
    candle_poll_sec: float = Field(default=30.0, ge=1.0, le=600.0, description="K 线轮询间隔（秒）")
    analysis_interval_sec: float = Field(
        default=30.0,
        ge=5.0,
        le=3600.0,
        description="AI 分析间隔（秒）",
    )

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
    journal_dir: Path = Field(
        default=Path("data/journal"),
        description="交易日志存储目录",
    )

    @field_validator("journal_dir", mode="before")
    @classmethod
    def parse_journal_dir(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def interval_list(self) -> list[str]:
        """解析后的分析周期列表，主周期始终排在首位。"""
        intervals = [item.strip() for item in self.analysis_intervals.split(",") if item.strip()]
        if self.primary_interval in intervals:
            intervals.remove(self.primary_interval)
        return [self.primary_interval, *intervals]

    @property
    def is_paper_mode(self) -> bool:
        """是否为模拟交易模式。"""
        return self.mode == RunMode.PAPER

    @property
    def is_live_mode(self) -> bool:
        """是否为实盘模式。"""
        return self.mode == RunMode.LIVE

    def validate_for_live(self) -> list[str]:
        """验证实盘模式的必要配置，返回缺失项列表。"""
        missing = []
        if not self.bingx_api_key:
            missing.append("BINGX_API_KEY")
        if not self.bingx_secret_key:
            missing.append("BINGX_SECRET_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        return missing


# 全局配置实例（延迟初始化）
_settings: Settings | None = None


def get_settings() -> Settings:
    """获取全局配置实例。"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """重新加载配置。"""
    global _settings
    _settings = Settings()
    return _settings
