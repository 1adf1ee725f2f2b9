"""
Console display of estimation results.

Renders results, variance components and diagnostics as Rich tables.
"""

from __future__ import annotations

from typing import Optional, Sequence, Union

import polars as pl
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core.diagnostics import Diagnostics, Severity
from .estimation.decomposition import VarianceComponents
from .estimation.design_diagnostics import DesignReport
from .estimation.engine import VarianceResult, results_to_frame

_SEVERITY_STYLE = {
    Severity.INFO: "dim",
    Severity.WARNING: "yellow",
    Severity.FATAL: "bold red",
}


def display_estimate(
    df: pl.DataFrame,
    title: str = "",
    max_rows: int = 20,
    precision: int = 2,
    console: Optional[Console] = None,
) -> None:
    """
    Format and display an estimation frame using Rich tables.

    Parameters
    ----------
    df : pl.DataFrame
        DataFrame containing estimation results.
    title : str, optional
        Title to display above the table.
    max_rows : int, optional
        Maximum rows to display. Defaults to 20.
    precision : int, optional
        Decimal places for floating point numbers. Defaults to 2.
    console : Console, optional
        Console to print to; a new one otherwise.
    """
    console = console or Console()

    if title:
        console.print(f"\n[bold blue]{title}[/bold blue]")

    table = Table(show_header=True, header_style="bold cyan")
    for col in df.columns:
        table.add_column(col, justify="right" if df[col].dtype.is_numeric() else "left")

    for row in df.head(max_rows).iter_rows():
        formatted_row = []
        for val in row:
            if val is None:
                formatted_row.append("-")
            elif isinstance(val, bool):
                formatted_row.append("yes" if val else "")
            elif isinstance(val, float):
                formatted_row.append(f"{val:,.{precision}f}")
            elif isinstance(val, int):
                formatted_row.append(f"{val:,}")
            else:
                formatted_row.append(str(val))
        table.add_row(*formatted_row)

    console.print(table)

    if len(df) > max_rows:
        console.print(f"[dim]... showing {max_rows} of {len(df)} rows[/dim]")


def display_results(
    results: Union[VarianceResult, Sequence[VarianceResult]],
    title: str = "",
    max_rows: int = 20,
    precision: int = 2,
    console: Optional[Console] = None,
) -> None:
    """Display variance results, then any warnings they carry."""
    console = console or Console()
    if isinstance(results, VarianceResult):
        results = [results]
    frame = results_to_frame(results).drop("n_diagnostics", strict=False)
    display_estimate(frame, title=title, max_rows=max_rows, precision=precision, console=console)

    fallbacks = sorted({(r.requested_method, r.method) for r in results if r.fallback})
    for requested, used in fallbacks:
        console.print(f"[yellow]Requested {requested}; variance computed by {used}[/yellow]")
    merged = Diagnostics().merge(*(r.diagnostics for r in results))
    if merged.warnings:
        display_diagnostics(merged, title="Diagnostics", console=console)


def display_components(
    components: VarianceComponents,
    title: str = "Variance components",
    precision: int = 4,
    console: Optional[Console] = None,
) -> None:
    """Display variance components with ICC, design effects and allocation guidance."""
    console = console or Console()
    display_estimate(
        components.to_frame(),
        title=f"{title} ({components.method}, n={components.n_used})",
        precision=precision,
        console=console,
    )
    if components.optimal_allocation:
        console.print(f"[green]{components.optimal_allocation['recommendation']}[/green]")
    for name, ratio in components.variance_ratios.items():
        console.print(f"[dim]{name}: {ratio:.{precision}g}[/dim]")


def display_diagnostics(
    diagnostics: Union[Diagnostics, DesignReport],
    title: str = "Diagnostics",
    console: Optional[Console] = None,
) -> None:
    """Display diagnostics, and recommendations when given a design report."""
    console = console or Console()
    entries = diagnostics.warnings if isinstance(diagnostics, DesignReport) else diagnostics.items

    if title:
        console.print(f"\n[bold blue]{title}[/bold blue]")
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("severity")
    table.add_column("code")
    table.add_column("message")
    table.add_column("count", justify="right")
    for d in entries:
        style = _SEVERITY_STYLE[d.severity]
        table.add_row(
            f"[{style}]{d.severity.value}[/{style}]",
            d.code,
            escape(d.message),
            "-" if d.count is None else f"{d.count:,}",
        )
    console.print(table)

    if isinstance(diagnostics, DesignReport):
        for rec in diagnostics.recommendations:
            console.print(f"[green]- {escape(rec)}[/green]")
