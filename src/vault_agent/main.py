"""CLI 入口模块 - Vault Agent 命令行接口。"""

import math
import sys
from datetime import datetime, timezone
from pathlib import Path

import click

from vault_agent import __version__
from vault_agent.config import Settings, get_settings
from vault_agent.data.defillama import DefiLlamaClient
from vault_agent.data.observer import (
    JsonFileSource,
    MarketObserver,
    ObservationError,
    OpportunitySource,
)
from vault_agent.journal.store import JournalStore
from vault_agent.pipeline import build_loop
from vault_agent.risk.gate import RiskGate
from vault_agent.types import CycleResult
from vault_agent.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """Vault Agent - 自主收益配置控制循环。

    观察收益机会 → 评估候选动作 → 风控审批 → 执行/记录。
    """
    if version:
        click.echo(f"vault-agent version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _resolve_settings(execute: bool) -> Settings:
    settings = get_settings()
    if execute and settings.simulation_only:
        # --execute 仅覆盖本次运行，不修改全局配置
        settings = settings.model_copy(update={"simulation_only": False})
    return settings


@cli.command()
@click.option(
    "--execute",
    is_flag=True,
    default=False,
    help="关闭仅模拟模式，交给纸面执行器执行",
)
def once(execute: bool) -> None:
    """执行单次 OODA 循环。

    观察 → 定位（健康检查 + 策略评估） → 决策 → 执行
    """
    setup_logging()
    logger = get_logger("vault_agent.main")
    settings = _resolve_settings(execute)

    logger.info(
        "starting_single_run",
        simulation_only=settings.simulation_only,
        risk_tolerance=settings.risk_tolerance.value,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )

    try:
        result = build_loop(settings).run_cycle()
    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)

    _echo_cycle(result)


@cli.command()
@click.option(
    "--interval-min",
    "-i",
    type=float,
    default=None,
    help="循环间隔（分钟），默认使用配置值",
)
@click.option(
    "--max-cycles",
    type=int,
    default=None,
    help="最多执行的循环次数（默认无限）",
)
@click.option(
    "--execute",
    is_flag=True,
    default=False,
    help="关闭仅模拟模式，交给纸面执行器执行",
)
def loop(interval_min: float | None, max_cycles: int | None, execute: bool) -> None:
    """循环执行 OODA 循环。

    每隔指定时间执行一次完整循环，失败后等待冷却时间再重试。
    使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("vault_agent.main")
    settings = _resolve_settings(execute)
    if interval_min is not None:
        settings = settings.model_copy(update={"cycle_interval_min": interval_min})

    vault_loop = build_loop(settings)
    logger.info(
        "starting_loop",
        interval_min=settings.cycle_interval_min,
        max_cycles=max_cycles,
        simulation_only=settings.simulation_only,
    )

    try:
        vault_loop.run_forever(max_cycles=max_cycles)
    except KeyboardInterrupt:
        vault_loop.stop()
        logger.info(
            "loop_interrupted",
            message="User stopped loop",
            total_cycles=vault_loop.cycle_count,
        )
        sys.exit(0)


@cli.command()
def status() -> None:
    """显示系统配置和决策日志摘要。"""
    setup_logging()
    settings = get_settings()
    profile = settings.risk_profile

    click.echo("=" * 50)
    click.echo("Vault Agent - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[SIM]" if settings.simulation_only else "[EXEC]"
    mode_text = "Simulation only" if settings.simulation_only else "Executing (paper)"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Cycle interval: {settings.cycle_interval_min:g} min")
    click.echo(f"   Retry cooldown: {settings.retry_cooldown_min:g} min")
    click.echo()

    # 风险偏好
    click.echo("[Risk Tolerance]")
    click.echo(f"   Tier: {settings.risk_tolerance.value}")
    click.echo(f"   Max risk score: {profile.max_risk_score:g}")
    click.echo(f"   Min risk-adjusted score: {profile.min_risk_adjusted_score:g}")
    click.echo(f"   Preferred leverage: {profile.preferred_leverage:g}x")
    click.echo()

    # 风控参数
    click.echo("[Risk Parameters]")
    click.echo(f"   Reserve minimum: {settings.reserve_min:g}")
    click.echo(f"   Max position: {settings.max_position_pct * 100:g}%")
    click.echo(f"   Max leverage: {settings.max_leverage:g}x")
    click.echo(f"   Max LTV: {settings.max_ltv * 100:g}%")
    click.echo(f"   Max slippage: {settings.max_slippage_bps:g} bps")
    click.echo(f"   Daily loss breaker: {settings.daily_loss_breaker_pct:g}%")
    click.echo(f"   Min yield improvement: {settings.min_yield_improvement_pct:g}%")
    click.echo(f"   Max break-even: {settings.max_break_even_days:g} days")
    click.echo()

    # 数据源
    click.echo("[Data Sources]")
    click.echo(f"   Observation file: {settings.observation_file}")
    defillama = f"enabled ({settings.defillama_chain})" if settings.defillama_enabled else "disabled"
    click.echo(f"   DeFi Llama: {defillama}")
    click.echo()

    # 决策日志
    click.echo("[Journal]")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    if settings.journal_dir.exists():
        stats = JournalStore(settings.journal_dir).stats()
        click.echo(f"   Total decisions: {stats['total_decisions']}")
        click.echo(f"   Decisions today: {stats['decisions_today']}")
        click.echo(f"   Avg risk score: {stats['avg_risk_score']:.1f}")
        click.echo(f"   Success rate: {stats['success_rate_pct']:.1f}%")
        for action, count in sorted(stats["action_breakdown"].items()):
            click.echo(f"   - {action}: {count}")
    else:
        click.echo("   No journal yet")

    click.echo()
    click.echo("=" * 50)


@cli.command()
def health() -> None:
    """根据当前观测数据输出健康报告。"""
    setup_logging()
    settings = get_settings()
    source = JsonFileSource(
        settings.observation_file,
        fallback_staking_yield_pct=settings.fallback_staking_yield_pct,
    )
    try:
        snapshot = source.fetch_snapshot()
    except ObservationError as e:
        click.echo(f"[ERROR] {e}")
        sys.exit(1)

    report = RiskGate(settings).get_health(snapshot)
    click.echo(report.summary)
    for check in report.checks:
        marker = "[OK]" if check.passed else "[FAIL]"
        click.echo(f"  {marker} {check.name}: {check.value} (threshold {check.threshold})")
    if report.status == "red":
        sys.exit(2)


@cli.command()
@click.option("--limit", "-n", type=int, default=10, help="每类最多显示条数")
def scan(limit: int) -> None:
    """扫描收益机会并按收益排序显示。"""
    setup_logging()
    settings = get_settings()
    gate = RiskGate(settings)
    json_source = JsonFileSource(
        settings.observation_file,
        fallback_staking_yield_pct=settings.fallback_staking_yield_pct,
    )
    sources: list[OpportunitySource] = [json_source]
    if settings.defillama_enabled:
        sources.append(DefiLlamaClient(settings))

    try:
        observation = MarketObserver(json_source, sources).observe()
    except ObservationError as e:
        click.echo(f"[ERROR] {e}")
        sys.exit(1)

    click.echo("[Simple Opportunities]")
    for opp in observation.opportunities[:limit]:
        flag = "" if gate.validate_rate(opp.yield_pct, "simple") else " [REJECTED: implausible rate]"
        click.echo(
            f"   {opp.yield_pct:7.2f}%  {opp.protocol:<18} {opp.pool:<28} "
            f"risk={opp.risk_tier}{flag}"
        )
    click.echo()

    click.echo("[Leveraged Opportunities]")
    leveraged = sorted(observation.leveraged_opportunities, key=lambda o: o.spread_pct, reverse=True)
    for lev in leveraged[:limit]:
        stale = " [STALE]" if lev.stale_data else ""
        click.echo(
            f"   {lev.collateral}/{lev.debt} on {lev.venue}: spread {lev.spread_pct:.2f}% "
            f"2x {lev.net_yield_2x:.2f}% 3x {lev.net_yield_3x:.2f}%{stale}"
        )
    click.echo()

    for warning in observation.warnings:
        click.echo(f"[WARN] {warning}")


@cli.command()
@click.option("--limit", "-n", type=int, default=20, help="显示条数")
@click.option("--action", "-a", type=str, default=None, help="按动作过滤")
def decisions(limit: int, action: str | None) -> None:
    """显示最近的决策记录。"""
    setup_logging()
    settings = get_settings()
    if not settings.journal_dir.exists():
        click.echo("No decisions recorded yet")
        return

    rows = JournalStore(settings.journal_dir).load_decisions(action=action, limit=limit)
    if not rows:
        click.echo("No decisions recorded yet")
        return

    for row in rows:
        outcome = row.get("outcome")
        if outcome is None:
            result = row.get("disposition", "hold")
        elif outcome["success"]:
            result = f"ok {outcome.get('signature') or ''}".strip()
        else:
            result = f"failed: {outcome.get('error')}"
        click.echo(f"{row['timestamp']}  {row['action']:<16} {result}")
        click.echo(f"    {row['justification']}")


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("vault_agent.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    settings = get_settings()
    if settings.observation_file.exists():
        click.echo(f"  [OK] Observation file found: {settings.observation_file}")
    else:
        click.echo(f"  [WARN] Observation file missing: {settings.observation_file}")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


def _echo_cycle(result: CycleResult) -> None:
    decision = result.decision
    click.echo(f"Cycle {result.cycle_number}: {result.health.summary}")
    click.echo(f"   Market: {result.recommendation.market_condition}")
    click.echo(f"   Decision: {decision.action} ({decision.disposition})")
    click.echo(f"   Reason: {result.reason}")
    best = result.recommendation.best
    if best.action != "hold":
        days = "never" if math.isinf(best.break_even_days) else f"{best.break_even_days:.1f} days"
        click.echo(
            f"   Best candidate: {best.candidate_id} net {best.net_yield_pct:.2f}% "
            f"score {best.risk_adjusted_score:.2f} break-even {days}"
        )
    if result.outcome is not None:
        status = "ok" if result.outcome.success else f"failed: {result.outcome.error}"
        click.echo(f"   Execution: {status}")
    click.echo(f"   Elapsed: {result.elapsed_ms:.1f} ms")


# 支持 python -m vault_agent.main 调用
if __name__ == "__main__":
    cli()
