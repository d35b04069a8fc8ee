#!/usr/bin/env python3
"""
DTI Portfolio Simulator - Demo Runner

This script runs the complete pipeline:
    Stage 1: Load price history (CSV directory or Yahoo Finance)
    Stage 2: Backtest every symbol and derive historical win rates
    Stage 3: Keep high-conviction symbols and simulate the portfolio
    Stage 4: Performance analytics and (optionally) Monte Carlo risk

EXECUTION
    python run_demo.py
    python run_demo.py --symbols AAPL MSFT RELIANCE.NS BP.L
    python run_demo.py --csv-dir data/prices --sim-start 2024-01-01
    python run_demo.py --currency GBP --monte-carlo --seed 7

OUTPUT ARTIFACTS
    outputs/
        simulation_report.txt     Text report
        simulation_report.md      Markdown report
        simulation_report.pdf     PDF report (reportlab)
        simulation_report.json    Analytics, counters, skip log, trade export
        ledger.csv                Closed trades
        valuations.csv            Daily valuation series
"""

from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import pandas as pd


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_SYMBOLS: List[str] = [
    "AAPL", "MSFT", "NVDA", "JPM", "XOM",
    "RELIANCE.NS", "TCS.NS", "INFY.NS",
    "BP.L", "HSBA.L", "ULVR.L",
]
DEFAULT_HISTORY_START: str = "2019-01-01"
DEFAULT_SIM_MONTHS: int = 12

OUTPUT_DIR = Path("outputs")


# =============================================================================
# DISPLAY COMPONENTS
# =============================================================================

BANNER = r'''
╔═══════════════════════════════════════════════════════════════════════════════╗
║                                                                               ║
║              DTI PORTFOLIO SIMULATOR                                          ║
║                                                                               ║
║              Directional Trend Index signals                                  ║
║              Multi-market portfolio replay and risk analytics                 ║
║                                                                               ║
╚═══════════════════════════════════════════════════════════════════════════════╝
'''


def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


def ensure_directories() -> None:
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)


# =============================================================================
# STAGES
# =============================================================================

def load_prices(args: argparse.Namespace, logger: logging.Logger):
    """Stage 1: load price histories."""
    from dti_quant.data_loader import PriceDataLoader

    print_section_header("STAGE 1: PRICE DATA")
    loader = PriceDataLoader(min_bars=args.min_bars)

    if args.csv_dir:
        result = loader.load_csv_directory(args.csv_dir)
    else:
        result = loader.fetch_yahoo(args.symbols, start=args.start, end=args.end)

    for skip in result.skipped:
        logger.warning(f"Excluded {skip.symbol}: {skip.reason}")

    print(f"  Loaded:  {len(result.series)} symbols")
    print(f"  Skipped: {len(result.skipped)} symbols")
    return result


def build_config(args: argparse.Namespace):
    from dti_quant.config import (
        Currency,
        SimulationConfig,
        StrategyVariant,
        TradingRules,
    )

    rules = TradingRules(
        entry_threshold=args.threshold,
        variant=StrategyVariant(args.strategy),
        min_bars=args.min_bars,
    )
    return SimulationConfig(
        rules=rules,
        display_currency=Currency(args.currency),
        max_workers=args.workers,
    )


def write_artifacts(report, logger: logging.Logger) -> None:
    """Stage 4: persist report artifacts."""
    from dti_quant.report_generator import generate_all_reports

    ensure_directories()
    outputs = generate_all_reports(report, OUTPUT_DIR)

    print()
    print("  Output Files:")
    for kind, path in outputs.items():
        status = path.name if path is not None else "FAILED"
        print(f"    {kind.upper():<11} {status}")

    logger.info(f"Artifacts written to {OUTPUT_DIR.resolve()}")


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the demo runner.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()

    parser = argparse.ArgumentParser(
        description="DTI Portfolio Simulator - Demo Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_demo.py                                  # Default multi-market basket
  python run_demo.py --symbols AAPL RELIANCE.NS BP.L  # Custom basket
  python run_demo.py --csv-dir data/prices            # Offline CSVs (one file per symbol)
  python run_demo.py --strategy reversal --threshold -40
        """
    )

    parser.add_argument("--symbols", nargs="+", default=DEFAULT_SYMBOLS,
                        help="Ticker symbols (.NS/.BO India, .L UK, otherwise US)")
    parser.add_argument("--csv-dir", type=str, default=None,
                        help="Load <SYMBOL>.csv files from this directory instead of Yahoo Finance")
    parser.add_argument("--start", type=str, default=DEFAULT_HISTORY_START,
                        help=f"History start date YYYY-MM-DD (default: {DEFAULT_HISTORY_START})")
    parser.add_argument("--end", type=str, default=None,
                        help="History end date / last simulated day (default: today)")
    parser.add_argument("--sim-start", type=str, default=None,
                        help=f"Simulation start (default: {DEFAULT_SIM_MONTHS} months before end)")
    parser.add_argument("--currency", choices=["USD", "GBP", "INR"], default="USD",
                        help="Display currency (default: USD)")
    parser.add_argument("--strategy", choices=["crossover", "reversal"], default="crossover",
                        help="Entry rule (default: crossover)")
    parser.add_argument("--threshold", type=float, default=0.0,
                        help="DTI entry threshold (default: 0)")
    parser.add_argument("--min-bars", type=int, default=200,
                        help="Minimum bars required per symbol (default: 200)")
    parser.add_argument("--workers", type=int, default=None,
                        help="Threads for per-symbol backtests")
    parser.add_argument("--monte-carlo", action="store_true",
                        help="Run a Monte Carlo risk simulation on the final open positions")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the Monte Carlo random source")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")

    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    from dti_quant.config import MonteCarloParameters
    from dti_quant.exceptions import ConfigurationError
    from dti_quant.pipeline import SimulationPipeline, format_simulation_report

    end = pd.Timestamp(args.end).normalize() if args.end else pd.Timestamp.today().normalize()
    sim_start = (
        pd.Timestamp(args.sim_start).normalize() if args.sim_start
        else end - pd.DateOffset(months=DEFAULT_SIM_MONTHS)
    )

    print(BANNER)
    print(f"  Execution Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"  Source:            {args.csv_dir or 'Yahoo Finance'}")
    print(f"  Simulation:        {sim_start.date()} to {end.date()}")
    print(f"  Display Currency:  {args.currency}")
    print(f"  Version:           {VERSION}")

    try:
        config = build_config(args).validate()
    except (ConfigurationError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    loaded = load_prices(args, logger)
    if not loaded.series:
        logger.error("No price data loaded - cannot proceed")
        return 1

    print_section_header("STAGES 2-3: SIGNALS AND SIMULATION")
    pipeline = SimulationPipeline(config)
    report = pipeline.run(
        loaded.series,
        simulation_start=sim_start,
        end_date=end,
        monte_carlo=MonteCarloParameters() if args.monte_carlo else None,
        seed=args.seed,
    )
    report.skipped = list(loaded.skipped) + report.skipped

    text = format_simulation_report(report)
    print_section_header("STAGE 4: RESULTS")
    print(text)

    try:
        write_artifacts(report, logger)
    except OSError as e:
        logger.error(f"Could not write artifacts: {e}")
        return 1

    logger.info(f"Completed in {time.time() - start_time:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
