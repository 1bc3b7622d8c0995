"""CLI 入口模块 - BTC Trading Engine 命令行接口。"""

import asyncio
import sys
from datetime import datetime
from pathlib import Path

import click

from btc_trading import __version__
from btc_trading.config import Settings, get_settings
from btc_trading.ai.openai_client import OpenAIClient
from btc_trading.data.binance import BinanceDataClient
from btc_trading.exec.bingx import BingXClient
from btc_trading.exec.paper import PaperAccount
from btc_trading.market.candles import CandleStore
from btc_trading.session import TradingSession, run_session
from btc_trading.types import CycleResult
from btc_trading.utils.logging import get_logger, setup_logging


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """BTC Trading Engine - AI 辅助的 BTC 杠杆交易引擎。

    多周期 EMA/RSI/MACD 指标 + EMA 事件检测 + LLM 决策 + 模拟/BingX 执行。
    """
    if version:
        click.echo(f"btc-trading version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _prepare(settings: Settings) -> None:
    """确保目录存在并校验实盘配置。"""
    logger = get_logger("btc_trading.main")
    settings.ensure_directories()
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的 API 密钥",
            )
            sys.exit(1)


async def _run_once(settings: Settings, dry_run: bool) -> CycleResult:
    session = TradingSession.from_settings(settings)
    await session.refresh_market(BinanceDataClient(settings))
    session.set_ai_active(True)
    await session.enrich_pending_events()
    return await session.run_analysis_cycle(dry_run=dry_run)


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，不执行实际操作",
)
def once(dry_run: bool) -> None:
    """执行单次分析循环。

    拉取行情 → 计算指标 → EMA 事件 → AI 决策 → 策略检查 → 执行/记录
    """
    setup_logging()
    logger = get_logger("btc_trading.main")
    settings = get_settings()
    _prepare(settings)

    logger.info(
        "starting_single_run",
        mode=settings.mode.value,
        policy=settings.policy_variant.value,
        dry_run=dry_run,
        timestamp=datetime.now().isoformat(),
    )

    try:
        result = asyncio.run(_run_once(settings, dry_run))
        logger.info(
            "run_completed",
            status=result.status,
            elapsed_ms=round(result.elapsed_ms, 2),
            decisions=len(result.decisions),
            orders=len(result.orders),
            warnings=result.warnings,
        )

    except KeyboardInterrupt:
        logger.info("run_interrupted", message="User interrupted")
        sys.exit(0)
    except Exception as e:
        logger.exception("run_failed", error=str(e))
        sys.exit(1)


@cli.command()
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="试运行模式，不执行实际操作",
)
def loop(dry_run: bool) -> None:
    """持续运行交易会话。

    价格轮询、K 线刷新和 AI 分析按各自间隔并发执行。
    使用 Ctrl+C 停止。
    """
    setup_logging()
    logger = get_logger("btc_trading.main")
    settings = get_settings()
    _prepare(settings)

    logger.info(
        "starting_loop",
        mode=settings.mode.value,
        policy=settings.policy_variant.value,
        price_poll_sec=settings.price_poll_sec,
        analysis_interval_sec=settings.analysis_interval_sec,
        auto_trading=settings.auto_trading,
        dry_run=dry_run,
    )

    session = TradingSession.from_settings(settings)
    try:
        asyncio.run(run_session(session, BinanceDataClient(settings), settings, dry_run=dry_run))
    except KeyboardInterrupt:
        logger.info("loop_stopped", message="User stopped loop")
        sys.exit(0)


@cli.command()
@click.option("--interval", "-i", default=None, help="只显示指定 K 线周期")
@click.option("--limit", "-n", type=int, default=None, help="拉取 K 线数量")
def indicators(interval: str | None, limit: int | None) -> None:
    """拉取 K 线并输出各周期最新指标值。"""
    setup_logging()
    settings = get_settings()
    client = BinanceDataClient(settings)
    intervals = [interval] if interval else settings.interval_list

    for resolved_interval in intervals:
        store = CandleStore(resolved_interval, settings.candle_store_capacity)
        store.extend(
            client.fetch_candles(
                settings.symbol,
                resolved_interval,
                limit or settings.kline_limit,
            )
        )
        click.echo(f"{settings.symbol} {resolved_interval} ({len(store)} candles)")
        for key, value in store.summary().items():
            if isinstance(value, float):
                click.echo(f"   {key}: {value:.4f}")
            else:
                click.echo(f"   {key}: {value if value is not None else '--'}")
        click.echo()


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()
    account = (
        PaperAccount(settings.journal_dir, initial_balance=settings.initial_balance)
        if settings.is_paper_mode
        else None
    )

    click.echo("=" * 50)
    click.echo("BTC Trading Engine - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading (BingX)"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Policy: {settings.policy_variant.value}")
    click.echo(f"   Auto trading: {'On' if settings.auto_trading else 'Off'}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    openai_status = "[OK] Configured" if settings.openai_api_key else "[--] Not configured"
    bingx_status = (
        "[OK] Configured"
        if settings.bingx_api_key and settings.bingx_secret_key
        else "[--] Not configured"
    )
    click.echo(f"   OpenAI API: {openai_status}")
    click.echo(f"   BingX API: {bingx_status}")
    click.echo(f"   LLM Model: {settings.openai_model}")
    click.echo()

    # 策略参数
    click.echo("[Trading Parameters]")
    click.echo(f"   Symbol: {settings.symbol} (orders: {settings.order_symbol})")
    click.echo(f"   Intervals: {', '.join(settings.interval_list)}")
    click.echo(
        f"   Position amount: {settings.min_position_amount} - {settings.max_position_amount} USDT"
    )
    click.echo(f"   EMA touch tolerance: {settings.ema_touch_tolerance * 100:.2f}%")
    click.echo(f"   EMA event cooldown: {settings.ema_event_cooldown_sec}s")
    click.echo()

    # 模拟账户
    if account is not None:
        click.echo("[Paper Account]")
        click.echo(f"   Balance: {account.balance:.2f} USDT")
        click.echo(f"   Realized PnL: {account.realized_pnl:.2f} USDT")
        click.echo(f"   Open positions: {len(account.positions)}")
        for position in account.positions:
            tag = "AI" if position.is_ai_managed else "manual"
            click.echo(
                f"   - {position.id} {position.side} {position.amount:.2f} "
                f"x{position.leverage:g} @ {position.entry_price:.2f} ({tag})"
            )
        click.echo()

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require exchange credentials")

    click.echo()
    click.echo("=" * 50)


@cli.command()
@click.option("--network", is_flag=True, default=False, help="同时检查 OpenAI/BingX 连通性")
def check(network: bool) -> None:
    """检查系统依赖、配置和外部服务连通性。"""
    setup_logging()
    logger = get_logger("btc_trading.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Settings loading"),
        ("httpx", "HTTP client"),
        ("pandas", "Data processing"),
        ("numpy", "Numerical computing"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("binance", "Market data"),
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

    click.echo()

    # 外部服务连通性
    if network:
        settings = get_settings()
        click.echo("Checking external services...")
        for name, check_fn in (
            ("OpenAI", OpenAIClient(settings).check_connection),
            ("BingX", BingXClient(settings).check_connection),
        ):
            try:
                reachable = asyncio.run(check_fn())
            except Exception as e:  # noqa: BLE001 - report and continue.
                reachable = False
                logger.warning("connectivity_check_failed", service=name, error=str(e))
            click.echo(f"  [{'OK' if reachable else 'FAIL'}] {name}")
            all_ok = all_ok and reachable
        click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some checks failed. Run: pip install -e . and verify .env")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m btc_trading.main 调用
if __name__ == "__main__":
    cli()
