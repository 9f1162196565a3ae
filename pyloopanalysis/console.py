"""
Console utilities and Rich formatting for PyLoopAnalysis.

Provides the CLI output:
- Styled tables and panels
- Status messages
- Help-page option groups
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.box import ROUNDED
from rich.console import Console
from rich.panel import Panel
from rich.style import Style
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from pyloopanalysis.analysis.candidates import LoopCandidate
    from pyloopanalysis.analysis.main import AnalysisResult
    from pyloopanalysis.analysis.tempo import TempoEstimate

# Module-level rich console instance
rich_console = Console()

# ============================================================================
# STYLES
# ============================================================================

STYLE_SUCCESS = Style(color="green", bold=True)
STYLE_ERROR = Style(color="red", bold=True)
STYLE_WARNING = Style(color="yellow")
STYLE_INFO = Style(color="cyan")
STYLE_SCORE_HIGH = Style(color="green", bold=True)
STYLE_SCORE_MED = Style(color="yellow")
STYLE_SCORE_LOW = Style(color="red")


# ============================================================================
# UI COMPONENTS
# ============================================================================

def print_status(message: str, status: str = "info"):
    """Print a styled status message."""
    icons = {
        "success": ("✓", STYLE_SUCCESS),
        "error": ("✗", STYLE_ERROR),
        "warning": ("⚠", STYLE_WARNING),
        "info": ("•", STYLE_INFO),
    }
    icon, style = icons.get(status, ("•", STYLE_INFO))
    rich_console.print(f"[{style.color}]{icon}[/] {message}")


def score_to_style(score: float) -> Style:
    """Get appropriate style for a confidence value."""
    if score >= 0.75:
        return STYLE_SCORE_HIGH
    elif score >= 0.5:
        return STYLE_SCORE_MED
    else:
        return STYLE_SCORE_LOW


def format_score(score: float, width: int = 6) -> Text:
    """Format a confidence with appropriate coloring."""
    text = f"{score:.1%}".rjust(width)
    return Text(text, style=score_to_style(score))


def format_time(seconds: float) -> str:
    return f"{int(seconds // 60):02d}:{seconds % 60:06.3f}"


def format_duration(duration: float) -> str:
    """Format duration in seconds to human readable."""
    if duration < 60:
        return f"{duration:.2f}s"
    else:
        mins = int(duration // 60)
        secs = duration % 60
        return f"{mins}m {secs:.1f}s"


def create_results_table(
    title: str,
    columns: list[tuple[str, str, str]],  # (name, style, justify)
) -> Table:
    """Create a styled results table."""
    table = Table(
        title=title,
        box=ROUNDED,
        header_style="bold cyan",
        border_style="dim",
        row_styles=["", "dim"],
    )

    for name, style, justify in columns:
        table.add_column(name, style=style, justify=justify)

    return table


def print_tempo(tempo: TempoEstimate, top: int = 5):
    """Print the tempo estimate and its strongest candidates."""
    rich_console.print(
        f"Tempo: [bold cyan]{tempo.bpm:.2f} BPM[/] (confidence ", format_score(tempo.confidence, 0), ")",
        sep="",
    )
    if tempo.used_fallback:
        print_status("No clear periodicity, default tempo used", "warning")
    if not tempo.candidates:
        return

    table = create_results_table(
        "Tempo candidates",
        [("#", "cyan", "right"), ("BPM", "green", "right"), ("Strength", "", "right")],
    )
    for i, candidate in enumerate(tempo.candidates[:top]):
        table.add_row(str(i), f"{candidate.bpm:.2f}", f"{candidate.strength:.3f}")
    rich_console.print(table)


def print_loop_info(loop: LoopCandidate, duration: float | None = None):
    """Print loop point information in a styled panel."""
    content = Text()
    content.append("Start: ", style="dim")
    content.append(format_time(loop.start_seconds), style="green bold")
    content.append(" → ", style="dim")
    content.append("End: ", style="dim")
    content.append(format_time(loop.end_seconds), style="green bold")
    content.append("\n")
    content.append("Confidence: ", style="dim")
    content.append(f"{loop.confidence:.1%}", style=score_to_style(loop.confidence))

    if duration:
        content.append(" │ ", style="dim")
        content.append("Length: ", style="dim")
        content.append(format_duration(loop.length_seconds), style="cyan")
        content.append(f" of {format_duration(duration)}", style="dim")

    panel = Panel(content, box=ROUNDED, border_style="green")
    rich_console.print(panel)


def print_analysis(result: AnalysisResult, top: int = 10):
    """Render a full analysis result."""
    print_tempo(result.tempo)
    rich_console.print(f"Beats: [cyan]{len(result.beats)}[/]")
    print_loop_info(result.loop, result.duration)

    if result.candidates:
        table = create_results_table(
            f"Top {min(top, len(result.candidates))} loop candidates",
            [
                ("#", "cyan", "right"),
                ("Start", "green", "left"),
                ("End", "green", "left"),
                ("Length", "magenta", "right"),
                ("Confidence", "", "right"),
                ("Musical", "", "center"),
                ("Method", "dim", "left"),
            ],
        )
        for i, candidate in enumerate(result.candidates[:top]):
            table.add_row(
                str(i),
                format_time(candidate.start_seconds),
                format_time(candidate.end_seconds),
                format_duration(candidate.length_seconds),
                format_score(candidate.confidence),
                "✓" if candidate.is_musical_boundary else "",
                candidate.score_method,
            )
        rich_console.print(table)

    for reason in result.fallback_reasons:
        print_status(reason, "warning")


# ============================================================================
# CLI HELP STYLING
# ============================================================================

_OPTION_GROUPS = {
    "pyloopanalysis analyze": [
        {"name": "Basic options", "options": ["--path", "--json", "--top"]},
        {"name": "Analysis options", "options": ["--config", "--workers"]},
    ],
    "pyloopanalysis tempo": [
        {"name": "Basic options", "options": ["--path", "--json"]},
    ],
}

_COMMAND_GROUPS = {
    "pyloopanalysis": [
        {
            "name": "Analysis Commands",
            "commands": ["analyze", "tempo"],
        },
    ]
}
