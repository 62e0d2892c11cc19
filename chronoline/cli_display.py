"""Terminal rendering of a live timeline document.

Turns the consumer's (document, state) pair into a Rich renderable:
a spinner while loading, a rejection panel, or a table of entries that
grows as the stream arrives.
"""

from __future__ import annotations

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

from chronoline.client import StreamState
from chronoline.schemas.timeline import DocumentKind, TimelineDocument

_STATE_STYLE: dict[StreamState, str] = {
    StreamState.IDLE: "dim",
    StreamState.LOADING: "cyan",
    StreamState.STREAMING: "bold cyan",
    StreamState.DONE: "bold green",
}


def render_timeline(
    document: TimelineDocument,
    state: StreamState,
    *,
    title: str = "",
    error: str | None = None,
) -> RenderableType:
    """Build the renderable for one snapshot of a timeline stream."""
    status = Text(str(state), style=_STATE_STYLE[state])

    if state is StreamState.LOADING:
        body: RenderableType = Spinner("dots", text="Asking the model...")
    elif document.kind is DocumentKind.REJECTION:
        body = Panel(document.rejection or "", border_style="yellow", title="Declined")
    else:
        table = Table(show_header=True, show_lines=False, expand=True)
        table.add_column("When", style="bold cyan", no_wrap=True)
        table.add_column("What happened")
        for entry in document.events:
            table.add_row(entry.time_range, entry.description)
        body = table

    parts: list[RenderableType] = [body]
    if error:
        parts.append(Text(f"✗ {error}", style="bold red"))

    return Panel(
        Group(*parts),
        title=f"[bold]{title}[/bold]" if title else None,
        subtitle=status,
        border_style="blue",
    )
