import json

import pandas as pd
import pytest

from dti_quant.performance_analytics import PerformanceAnalyzer
from dti_quant.pipeline import SimulationReport
from dti_quant.portfolio_simulator import PortfolioSimulator
from dti_quant.report_generator import (
    export_csv,
    generate_all_reports,
    generate_json_report,
    generate_markdown_report,
)


@pytest.fixture
def report(make_signal):
    signals = [
        make_signal("AAPL", entry="2024-01-15", exit="2024-01-17", pl=6.0),
        make_signal("BP.L", entry="2024-01-16", exit="2024-01-19", pl=-5.0),
        make_signal("TCS.NS", entry="2024-01-17", exit="2024-03-01", pl=2.0),
    ]
    simulation = PortfolioSimulator().run(signals, "2024-01-15", "2024-01-31")
    return SimulationReport(
        ledger=list(simulation.trades),
        valuations=simulation.valuations,
        analytics=PerformanceAnalyzer().analyze_result(simulation),
        skipped=simulation.skipped,
        simulation=simulation,
        qualifying_symbols=["AAPL", "BP.L", "TCS.NS"],
        metadata={'simulation_start': "2024-01-15", 'end_date': "2024-01-31", 'strategy': "crossover", 'symbols': 3},
    )


def test_markdown_report(report, tmp_path):
    path = tmp_path / "report.md"

    generate_markdown_report(report, path)
    text = path.read_text(encoding='utf-8')

    assert text.startswith("# Portfolio Simulation Report")
    assert "| AAPL | 2024-01-15 | 2024-01-17 | +6.00% | Take Profit | 2 |" in text
    assert "## By Market" in text


def test_json_report_exports_trades(report, tmp_path):
    path = tmp_path / "nested" / "report.json"

    generate_json_report(report, path)
    data = json.loads(path.read_text(encoding='utf-8'))

    assert data['total_trades'] == 2
    assert [t['symbol'] for t in data['trades']] == ["AAPL", "BP.L"]
    assert data['open_positions'][0]['symbol'] == "TCS.NS"
    assert data['analytics']['total_trades'] == 2
    assert data['monte_carlo'] is None


def test_csv_export(report, tmp_path):
    paths = export_csv(report, tmp_path)

    ledger = pd.read_csv(paths['ledger'])
    valuations = pd.read_csv(paths['valuations'])
    assert list(ledger['symbol']) == ["AAPL", "BP.L"]
    assert len(valuations) == 13


def test_generate_all_reports(report, tmp_path):
    outputs = generate_all_reports(report, tmp_path)

    for kind in ('txt', 'md', 'json', 'ledger', 'valuations'):
        assert outputs[kind] is not None and outputs[kind].exists()
    assert "PORTFOLIO SIMULATION REPORT" in outputs['txt'].read_text(encoding='utf-8')
    if outputs['pdf'] is not None:
        assert outputs['pdf'].read_bytes().startswith(b"%PDF")
