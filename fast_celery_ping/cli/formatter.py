"""Terminal output for ping results."""

from typing import Optional

from rich.console import Console

from fast_celery_ping.protocol.codec import ProtocolCodec
from fast_celery_ping.protocol.messages import WorkerResponse

NO_REPLIES_MESSAGE = "Error: No nodes replied within time constraint."


class PingFormatter:
    """Renders ping replies as Celery-style text or JSON.

    Output mirrors ``celery inspect ping`` so existing scripts keep working.
    """

    def __init__(self, output_format: str = "text", console: Optional[Console] = None) -> None:
        if output_format not in ("text", "json"):
            raise ValueError(f"unsupported output format: {output_format}")
        self.output_format = output_format
        self.console = console or Console(highlight=False, soft_wrap=True)

    def render(self, responses: dict[str, WorkerResponse]) -> None:
        if self.output_format == "json":
            self.render_json(responses)
        else:
            self.render_text(responses)

    def render_text(self, responses: dict[str, WorkerResponse]) -> None:
        if not responses:
            self.console.print(NO_REPLIES_MESSAGE, markup=False)
            return

        for worker in sorted(responses):
            self.console.print(f"{worker}: OK {responses[worker].status}", markup=False)
        self.console.print(f"{len(responses)} nodes online.", markup=False)

    def render_json(self, responses: dict[str, WorkerResponse]) -> None:
        result: dict[str, dict[str, str]] = {}
        for worker in sorted(responses):
            result.update(ProtocolCodec.format_pong(worker, responses[worker].status))
        self.console.print_json(data=result, indent=2, highlight=False)
