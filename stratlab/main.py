"""StratLab — command-line entry point.

Runs simulations, buy & hold baselines, unified portfolio runs, preset
searches and market analysis over CSV price files::

    python -m stratlab.main simulate prices.csv --preset rsi_oversold
    python -m stratlab.main unified btc.csv eth.csv --strategy my.json
    python -m stratlab.main optimize prices.csv --investment 5000
"""

import dataclasses
import json
import logging
from pathlib import Path

logger = logging.getLogger("stratlab")


def _write_output(path: str | None, payload) -> None:
    if not path:
        return
    data = dataclasses.asdict(payload) if dataclasses.is_dataclass(payload) else [
        dataclasses.asdict(item) for item in payload
    ]
    Path(path).write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
    logger.info("Wrote results → %s", path)


def _log_result(result) -> None:
    logger.info(
        "Final value $%.2f (%+.2f%%): %d buys, %d sells, %d skipped, "
        "max drawdown %.2f%%, Sharpe %.2f",
        result.final_value,
        result.profit_percentage,
        result.stats.buy_count,
        result.stats.sell_count,
        result.stats.skip_count,
        result.stats.max_drawdown_pct,
        result.stats.sharpe_ratio,
    )


# ── Commands ─────────────────────────────────────────────────────────────


def _cmd_simulate(args, config) -> None:
    from stratlab.backtest.engine import SimulationEngine
    from stratlab.data import load_bars, resolve_strategy

    bars = load_bars(args.prices)
    nodes = resolve_strategy(args.strategy, args.preset, config.presets_path)
    engine = SimulationEngine(config)
    engine.set_price_data(bars, symbol=Path(args.prices).stem.upper())
    result = engine.run_simulation(args.investment or config.default_investment, nodes)
    _log_result(result)
    _write_output(args.output, result)


def _cmd_buy_and_hold(args, config) -> None:
    from stratlab.backtest.engine import SimulationEngine
    from stratlab.data import load_bars

    engine = SimulationEngine(config)
    engine.set_price_data(load_bars(args.prices), symbol=Path(args.prices).stem.upper())
    result = engine.run_buy_and_hold(args.investment or config.default_investment)
    _log_result(result)
    _write_output(args.output, result)


def _cmd_unified(args, config) -> None:
    from stratlab.backtest.engine import SimulationEngine
    from stratlab.data import load_assets, resolve_strategy

    assets = load_assets(args.prices)
    nodes = resolve_strategy(args.strategy, args.preset, config.presets_path)
    result = SimulationEngine(config).run_unified_portfolio_simulation(
        assets, nodes, args.investment or config.default_investment,
    )
    logger.info(
        "Portfolio value $%.2f (%+.2f%%), cash $%.2f, %d events",
        result.final_portfolio_value,
        result.profit_percentage,
        result.final_cash,
        len(result.events),
    )
    for summary in result.asset_summaries:
        logger.info(
            "  %s: P/L $%.2f, %d buys, %d sells, %d skipped",
            summary.symbol,
            summary.total_profit_loss,
            summary.buy_count,
            summary.sell_count,
            summary.skip_count,
        )
    _write_output(args.output, result)


def _cmd_optimize(args, config) -> None:
    import asyncio

    from stratlab.data import load_assets, load_bars
    from stratlab.optimizer.optimizer import StrategyOptimizer

    optimizer = StrategyOptimizer(config)
    investment = args.investment or config.default_investment

    def on_progress(progress) -> None:
        logger.debug(
            "[%s] %d/%d %s", progress.phase, progress.current,
            progress.total, progress.current_strategy,
        )

    if len(args.prices) > 1:
        coro = optimizer.multi_asset_optimize(
            load_assets(args.prices), investment, on_progress, args.target,
        )
    else:
        optimizer.load_data(load_bars(args.prices[0]))
        coro = optimizer.smart_optimize(investment, on_progress, args.target)

    results = asyncio.run(coro)
    for rank, item in enumerate(results, start=1):
        logger.info(
            "%2d. %+.2f%%  %s",
            rank, item.profit_percentage, " + ".join(item.strategy_names),
        )
    _write_output(args.output, results)


def _cmd_analyze(args, config) -> None:
    from stratlab.data import load_bars
    from stratlab.strategy.market import analyze_market

    analysis = analyze_market(load_bars(args.prices))
    logger.info(
        "%s | trend=%s (%.0f) volatility=%s momentum=%s rsi=%s volume=%s",
        analysis.summary,
        analysis.trend,
        analysis.trend_strength,
        analysis.volatility,
        analysis.momentum,
        analysis.rsi_level,
        analysis.volume_trend,
    )
    logger.info("Recommended categories: %s", ", ".join(analysis.recommended_categories))
    _write_output(args.output, analysis)


# ── CLI ──────────────────────────────────────────────────────────────────


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(description="StratLab strategy backtester")
    parser.add_argument("--env", help="Path to a .env file (default: ./.env)")
    sub = parser.add_subparsers(dest="command", required=True)

    def common(p, multi: bool = False) -> None:
        if multi:
            p.add_argument("prices", nargs="+", help="CSV files, optionally SYMBOL=path.csv")
        else:
            p.add_argument("prices", help="CSV file with date,open,high,low,close,volume")
        p.add_argument("--investment", type=float, help="Starting cash (default: DEFAULT_INVESTMENT)")
        p.add_argument("--output", "-o", help="Write the result as JSON to this path")

    def strategy_args(p) -> None:
        p.add_argument("--strategy", "-s", help="JSON strategy file")
        p.add_argument("--preset", "-p", action="append", default=[],
                       help="Preset id (repeatable, appended after --strategy)")

    p = sub.add_parser("simulate", help="Run a strategy on one asset")
    common(p)
    strategy_args(p)
    p.set_defaults(handler=_cmd_simulate)

    p = sub.add_parser("buy-and-hold", help="Buy on the first bar, hold to the last")
    common(p)
    p.set_defaults(handler=_cmd_buy_and_hold)

    p = sub.add_parser("unified", help="Run a strategy on several assets with shared cash")
    common(p, multi=True)
    strategy_args(p)
    p.set_defaults(handler=_cmd_unified)

    p = sub.add_parser("optimize", help="Search preset combinations")
    common(p, multi=True)
    p.add_argument("--target", type=float, help="Profit %% a result must beat to count as profitable")
    p.set_defaults(handler=_cmd_optimize)

    p = sub.add_parser("analyze", help="Classify the market regime of a series")
    p.add_argument("prices", help="CSV file with date,open,high,low,close,volume")
    p.add_argument("--output", "-o", help="Write the analysis as JSON to this path")
    p.set_defaults(handler=_cmd_analyze)

    return parser


def _run_cli(argv=None) -> None:
    """Parse CLI arguments and dispatch to the chosen command."""
    from stratlab.config import load_config

    args = build_parser().parse_args(argv)
    config = load_config(args.env)

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    args.handler(args, config)


if __name__ == "__main__":
    _run_cli()
