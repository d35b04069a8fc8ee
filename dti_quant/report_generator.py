"""
Report Generator for Portfolio Simulation Runs

Writes a SimulationReport to disk in several formats:
    - Text:     format_simulation_report output
    - Markdown: Documentation-ready tables
    - JSON:     Analytics, counters, skip log, and the full trade export
    - CSV:      Closed-trade ledger and daily valuations
    - PDF:      Native PDF using reportlab
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from dti_quant.pipeline import VERSION, SimulationReport, format_simulation_report

logger = logging.getLogger(__name__)


# =============================================================================
# MARKDOWN REPORT GENERATOR
# =============================================================================

def generate_markdown_report(report: SimulationReport, output_path: Path) -> None:
    """Generate a Markdown summary of one simulation run."""
    a = report.analytics
    meta = report.metadata
    cur = a.display_currency.value
    stats = report.simulation.stats

    market_md = "| Market | Trades | P/L | Win Rate |\n|--------|--------|-----|----------|\n"
    for market, breakdown in a.by_market.items():
        market_md += f"| {market} | {breakdown.trades} | {breakdown.pl:,.2f} {cur} | {breakdown.win_rate:.1f}% |\n"

    exit_md = "| Reason | Count |\n|--------|-------|\n"
    for reason, count in a.exit_reasons.items():
        exit_md += f"| {reason} | {count} |\n"

    monthly_md = ""
    if a.monthly_returns:
        monthly_md = "\n## Monthly Returns\n\n| Month | Return |\n|-------|--------|\n"
        for m in a.monthly_returns:
            monthly_md += f"| {m.month} | {m.return_pct:+.2f}% |\n"

    trades_md = ""
    if report.ledger:
        trades_md = (
            "\n## Closed Trades\n\n"
            "| Symbol | Entry | Exit | P/L % | Reason | Days |\n"
            "|--------|-------|------|-------|--------|------|\n"
        )
        for t in report.ledger:
            trades_md += (
                f"| {t.symbol} | {t.entry_date.date()} | {t.exit_date.date()} | "
                f"{t.pl_percent:+.2f}% | {t.exit_reason} | {t.holding_days} |\n"
            )

    mc_md = ""
    if report.monte_carlo is not None:
        mc = report.monte_carlo
        mc_md = f'''
## Monte Carlo Risk ({mc.iterations} paths x {mc.days} days)

| Metric | Value |
|--------|-------|
| Initial Value | {mc.initial_value:,.2f} {cur} |
| Expected Value | {mc.expected_value:,.2f} {cur} |
| VaR (95%) | {mc.var_95:,.2f} {cur} |
| VaR (99%) | {mc.var_99:,.2f} {cur} |
| Expected Shortfall (95%) | {mc.expected_shortfall_95:,.2f} {cur} |
| Expected Max Drawdown | {mc.expected_max_drawdown:.2f}% |
| Probability of Loss | {mc.probability_of_loss:.1f}% |
'''

    md = f'''# Portfolio Simulation Report

| Field | Value |
|-------|-------|
| Period | {meta.get('simulation_start')} to {meta.get('end_date')} |
| Strategy | {meta.get('strategy')} |
| Symbols | {meta.get('symbols')} loaded, {len(report.qualifying_symbols)} high conviction |
| Display Currency | {cur} |
| Report Generated | {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} |

---

## Portfolio Value

| Metric | Value |
|--------|-------|
| Initial Value | {a.initial_value:,.2f} {cur} |
| Final Value | {a.final_value:,.2f} {cur} |
| Total Return | {a.total_return:+.2f}% |
| Annualized Return | {a.annualized_return:+.2f}% |

## Risk

| Metric | Value |
|--------|-------|
| Volatility | {a.volatility:.2f}% |
| Max Drawdown | {a.max_drawdown:.2f}% |
| Sharpe Ratio | {a.sharpe_ratio:.3f} |
| Sortino Ratio | {a.sortino_ratio:.3f} |
| Calmar Ratio | {a.calmar_ratio:.3f} |
| Skewness | {a.skewness:+.3f} |
| Kurtosis | {a.kurtosis:.3f} |

## Trades

| Metric | Value |
|--------|-------|
| Closed Trades | {a.total_trades} ({a.winning_trades} won, {a.losing_trades} lost) |
| Win Rate | {a.win_rate:.1f}% |
| Average Win | {a.avg_win:+.2f}% |
| Average Loss | {a.avg_loss:+.2f}% |
| Profit Factor | {a.profit_factor:.2f} |
| Expectancy | {a.expectancy:+.2f}% |
| Holding Period | {a.avg_holding_period:.1f} days avg, {a.median_holding_period:.1f} median |
| Admitted | {stats.admitted} |
| Rejected (total / market / duplicate) | {stats.rejected_total_cap} / {stats.rejected_market_cap} / {stats.rejected_duplicate} |

## By Market

{market_md}
## Exit Reasons

{exit_md}{monthly_md}{trades_md}{mc_md}
---

*DTI Portfolio Simulator v{VERSION}*
'''

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(md, encoding='utf-8')
    logger.info(f"Generated Markdown: {output_path}")


# =============================================================================
# JSON REPORT GENERATOR
# =============================================================================

def generate_json_report(report: SimulationReport, output_path: Path) -> None:
    """Analytics, counters, and skip log, plus every closed trade."""
    data = report.to_dict()
    data['trades'] = [t.to_dict() for t in report.ledger]
    data['total_trades'] = len(report.ledger)
    data['export_date'] = datetime.now().isoformat(timespec='seconds')
    data['open_positions'] = [
        {
            'symbol': p.symbol,
            'market': p.market.value,
            'entry_date': p.entry_date,
            'entry_price': p.entry_price,
            'trade_size': p.trade_size,
            'currency': p.currency.value,
        }
        for p in report.simulation.open_positions
    ]

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Generated JSON: {output_path}")


# =============================================================================
# CSV EXPORT
# =============================================================================

def export_csv(report: SimulationReport, output_dir: Path) -> Dict[str, Path]:
    """Ledger and valuation series as CSV files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    ledger_path = output_dir / "ledger.csv"
    valuations_path = output_dir / "valuations.csv"

    report.simulation.ledger_frame().to_csv(ledger_path, index=False)
    report.simulation.valuation_frame().to_csv(valuations_path)

    logger.info(f"Exported {len(report.ledger)} trades and {len(report.valuations)} valuations")
    return {'ledger': ledger_path, 'valuations': valuations_path}


# =============================================================================
# PDF REPORT GENERATOR
# =============================================================================

def generate_pdf_report(report: SimulationReport, output_path: Path) -> bool:
    """Generate native PDF report using reportlab."""
    try:
        from reportlab.lib import colors
        from reportlab.lib.enums import TA_CENTER
        from reportlab.lib.pagesizes import letter
        from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
        from reportlab.lib.units import inch
        from reportlab.platypus import (
            HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
        )
    except ImportError:
        logger.warning("reportlab not installed. Run: pip install reportlab")
        return False

    a = report.analytics
    meta = report.metadata
    cur = a.display_currency.value

    NAVY = colors.HexColor("#1a1a2e")
    GREEN = colors.HexColor("#10b981")
    RED = colors.HexColor("#ef4444")
    GRAY = colors.HexColor("#6b7280")
    LIGHT = colors.HexColor("#f3f4f6")
    GRID = colors.HexColor("#e5e7eb")

    header_table = TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), NAVY),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('GRID', (0, 0), (-1, -1), 0.5, GRID),
        ('TOPPADDING', (0, 0), (-1, -1), 6),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 6),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, LIGHT]),
    ])

    output_path.parent.mkdir(parents=True, exist_ok=True)
    doc = SimpleDocTemplate(
        str(output_path), pagesize=letter,
        rightMargin=0.75*inch, leftMargin=0.75*inch,
        topMargin=0.75*inch, bottomMargin=0.75*inch
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle('Title', parent=styles['Heading1'], fontSize=24, spaceAfter=4, textColor=NAVY)
    subtitle_style = ParagraphStyle('Subtitle', parent=styles['Normal'], fontSize=11, textColor=GRAY, spaceAfter=16)
    section_style = ParagraphStyle('Section', parent=styles['Heading2'], fontSize=13, spaceBefore=18, spaceAfter=10, textColor=NAVY)

    story = []

    story.append(Paragraph("<b>Portfolio Simulation Report</b>", title_style))
    story.append(Paragraph(
        f"{meta.get('simulation_start')} to {meta.get('end_date')} | "
        f"{meta.get('strategy')} | {cur}",
        subtitle_style
    ))
    story.append(HRFlowable(width="100%", thickness=1, color=LIGHT, spaceAfter=16))

    # Summary
    story.append(Paragraph("Performance Summary", section_style))
    return_color = GREEN if a.total_return >= 0 else RED
    summary_data = [
        ["Metric", "Value", "Metric", "Value"],
        ["Initial Value", f"{a.initial_value:,.2f}", "Final Value", f"{a.final_value:,.2f}"],
        ["Total Return", f"{a.total_return:+.2f}%", "Annualized", f"{a.annualized_return:+.2f}%"],
        ["Volatility", f"{a.volatility:.2f}%", "Max Drawdown", f"{a.max_drawdown:.2f}%"],
        ["Sharpe Ratio", f"{a.sharpe_ratio:.3f}", "Sortino Ratio", f"{a.sortino_ratio:.3f}"],
        ["Calmar Ratio", f"{a.calmar_ratio:.3f}", "Profit Factor", f"{a.profit_factor:.2f}"],
        ["Win Rate", f"{a.win_rate:.1f}%", "Expectancy", f"{a.expectancy:+.2f}%"],
    ]
    t = Table(summary_data, colWidths=[1.6*inch, 1.6*inch, 1.6*inch, 1.7*inch])
    t.setStyle(header_table)
    t.setStyle(TableStyle([('TEXTCOLOR', (1, 2), (1, 2), return_color)]))
    story.append(t)
    story.append(Spacer(1, 12))

    # Markets
    story.append(Paragraph("By Market", section_style))
    m_data = [["Market", "Trades", f"P/L ({cur})", "Win Rate"]]
    for market, breakdown in a.by_market.items():
        m_data.append([market, str(breakdown.trades), f"{breakdown.pl:,.2f}", f"{breakdown.win_rate:.1f}%"])
    t = Table(m_data, colWidths=[1.6*inch, 1.4*inch, 2*inch, 1.5*inch])
    t.setStyle(header_table)
    story.append(t)
    story.append(Spacer(1, 12))

    # Exit reasons
    story.append(Paragraph("Exit Reasons", section_style))
    e_data = [["Reason", "Count"]] + [[r, str(c)] for r, c in a.exit_reasons.items()]
    t = Table(e_data, colWidths=[3*inch, 1.5*inch])
    t.setStyle(header_table)
    story.append(t)

    if report.monte_carlo is not None:
        mc = report.monte_carlo
        story.append(Paragraph(f"Monte Carlo Risk ({mc.iterations} paths x {mc.days} days)", section_style))
        mc_data = [
            ["Metric", "Value"],
            ["Expected Value", f"{mc.expected_value:,.2f} {cur}"],
            ["VaR (95%)", f"{mc.var_95:,.2f} {cur}"],
            ["VaR (99%)", f"{mc.var_99:,.2f} {cur}"],
            ["Expected Shortfall", f"{mc.expected_shortfall_95:,.2f} {cur}"],
            ["Probability of Loss", f"{mc.probability_of_loss:.1f}%"],
        ]
        t = Table(mc_data, colWidths=[3*inch, 2.5*inch])
        t.setStyle(header_table)
        story.append(t)

    story.append(HRFlowable(width="100%", thickness=1, color=LIGHT, spaceBefore=16))
    footer_style = ParagraphStyle('Footer', parent=styles['Normal'], fontSize=8, textColor=GRAY, alignment=TA_CENTER)
    story.append(Paragraph(
        f"DTI Portfolio Simulator v{VERSION} | Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        footer_style
    ))

    doc.build(story)
    logger.info(f"Generated PDF: {output_path}")
    return True


# =============================================================================
# MAIN GENERATOR
# =============================================================================

def generate_all_reports(report: SimulationReport, output_dir: Path) -> Dict[str, Optional[Path]]:
    """Write every report format; a failing format is logged and left out."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs: Dict[str, Optional[Path]] = {}

    txt_path = output_dir / "simulation_report.txt"
    txt_path.write_text(format_simulation_report(report), encoding='utf-8')
    outputs['txt'] = txt_path

    md_path = output_dir / "simulation_report.md"
    try:
        generate_markdown_report(report, md_path)
        outputs['md'] = md_path
    except Exception as e:
        logger.error(f"Markdown failed: {e}")
        outputs['md'] = None

    json_path = output_dir / "simulation_report.json"
    try:
        generate_json_report(report, json_path)
        outputs['json'] = json_path
    except Exception as e:
        logger.error(f"JSON failed: {e}")
        outputs['json'] = None

    try:
        outputs.update(export_csv(report, output_dir))
    except Exception as e:
        logger.error(f"CSV export failed: {e}")
        outputs['ledger'] = outputs['valuations'] = None

    pdf_path = output_dir / "simulation_report.pdf"
    try:
        outputs['pdf'] = pdf_path if generate_pdf_report(report, pdf_path) else None
    except Exception as e:
        logger.error(f"PDF failed: {e}")
        outputs['pdf'] = None

    return outputs
