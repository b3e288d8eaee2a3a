"""配置加载模块 - 从环境变量和 .env 文件加载配置。"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RiskTolerance(str, Enum):
    """风险偏好枚举。"""

    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class LogFormat(str, Enum):
    """日志格式枚举。"""

    JSON = "json"
    CONSOLE = "console"


@dataclass(frozen=True, slots=True)
class RiskProfile:
    """风险偏好对应的候选过滤参数。"""

    max_risk_score: float
    min_risk_adjusted_score: float
    preferred_leverage: float


RISK_PROFILES: dict[RiskTolerance, RiskProfile] = {
    RiskTolerance.CONSERVATIVE: RiskProfile(30.0, 0.5, 1.5),
    RiskTolerance.BALANCED: RiskProfile(50.0, 0.3, 2.0),
    RiskTolerance.AGGRESSIVE: RiskProfile(70.0, 0.1, 3.0),
}


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
    simulation_only: bool = Field(
        default=True,
        description="仅模拟：记录 would-execute 决策但不执行",
    )
    risk_tolerance: RiskTolerance = Field(
        default=RiskTolerance.BALANCED,
        description="风险偏好: conservative / balanced / aggressive",
    )
    cycle_interval_min: float = Field(
        default=120.0,
        gt=0,
        description="OODA 循环间隔（分钟）",
    )
    retry_cooldown_min: float = Field(
        default=5.0,
        gt=0,
        description="循环失败后的冷却时间（分钟）",
    )

    # ==================== 风控参数 ====================
    reserve_min: float = Field(
        default=0.05,
        ge=0.0,
        description="最低流动储备（基础资产单位），用于手续费和紧急退出",
    )
    max_position_pct: float = Field(
        default=0.50,
        gt=0.0,
        le=1.0,
        description="单一动作占组合价值的最大比例",
    )
    max_leverage: float = Field(
        default=3.0,
        ge=1.0,
        le=10.0,
        description="最大杠杆倍数",
    )
    max_ltv: float = Field(
        default=0.80,
        gt=0.0,
        lt=1.0,
        description="杠杆仓位最大 LTV",
    )
    max_slippage_bps: float = Field(
        default=100.0,
        ge=0.0,
        description="最大滑点（bps）",
    )
    default_slippage_bps: float = Field(
        default=50.0,
        ge=0.0,
        description="杠杆开仓候选默认请求滑点（bps）",
    )
    daily_loss_breaker_pct: float = Field(
        default=5.0,
        gt=0.0,
        le=100.0,
        description="日亏损熔断阈值（百分比）",
    )
    min_yield_improvement_pct: float = Field(
        default=1.0,
        ge=0.0,
        description="切换策略所需的最低收益率提升（百分点）",
    )
    max_break_even_days: float = Field(
        default=7.0,
        gt=0.0,
        description="最长回本周期（天）",
    )

    # ==================== 策略参数 ====================
    min_spread_pct: float = Field(
        default=1.0,
        description="杠杆策略最低利差（百分点）",
    )
    tx_cost: float = Field(
        default=0.0005,
        ge=0.0,
        description="单笔交易固定成本（基础资产单位）",
    )
    fallback_staking_yield_pct: float = Field(
        default=7.5,
        description="无法读取质押收益时的替代值（会标记为 stale）",
    )

    # ==================== 数据源 ====================
    observation_file: Path = Field(
        default=Path("data/observation.json"),
        description="JSON 观测数据文件",
    )
    defillama_enabled: bool = Field(default=False, description="是否扫描 DeFi Llama 收益池")
    defillama_chain: str = Field(default="Solana", description="DeFi Llama 链过滤")
    defillama_min_tvl_usd: float = Field(
        default=100_000.0,
        ge=0.0,
        description="忽略 TVL 低于该值的池子",
    )
    http_timeout: float = Field(default=15.0, gt=0.0, description="HTTP 超时（秒）")

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
        description="决策日志存储目录",
    )

    @field_validator("journal_dir", "observation_file", mode="before")
    @classmethod
    def parse_path(cls, v: str | Path) -> Path:
        """将字符串转换为 Path 对象。"""
        return Path(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def check_slippage(self) -> "Settings":
        """默认滑点不能超过滑点上限。"""
        if self.default_slippage_bps > self.max_slippage_bps:
            raise ValueError("default_slippage_bps must not exceed max_slippage_bps")
        return self

    def ensure_directories(self) -> None:
        """确保必要的目录存在。"""
        self.journal_dir.mkdir(parents=True, exist_ok=True)

    @property
    def risk_profile(self) -> RiskProfile:
        """当前风险偏好对应的参数。"""
        return RISK_PROFILES[self.risk_tolerance]

    @property
    def cycle_interval_sec(self) -> float:
        return self.cycle_interval_min * 60

    @property
    def retry_cooldown_sec(self) -> float:
        return self.retry_cooldown_min * 60


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
