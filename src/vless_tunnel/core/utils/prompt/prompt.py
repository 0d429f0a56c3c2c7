"""Shared terminal plumbing for live displays."""

from rich.console import Console, RenderableType
from rich.live import Live
from rich.spinner import Spinner

console = Console()

DEFAULT_REFRESH_RATE = 1.0  # seconds between stats samples


class PromptHandler:
    """Base for live terminal views: owns the console, spinner and refresh cadence."""

    def __init__(self, refresh_rate: float = DEFAULT_REFRESH_RATE, output: Console | None = None) -> None:
        self._refresh_rate = refresh_rate
        self._console = output or console
        self._spinner = Spinner("dots", style="cyan")

    @property
    def refresh_rate(self) -> float:
        return self._refresh_rate

    def spinner_frame(self, elapsed: float) -> str:
        """Plain text of the spinner frame at ``elapsed`` seconds."""
        return self._spinner.render(elapsed).plain

    def create_live_display(self, content: RenderableType) -> Live:
        """Create a transient live display redrawn twice per sample."""
        return Live(
            content,
            console=self._console,
            refresh_per_second=max(int(2 / self._refresh_rate), 1),
            transient=True,
        )
