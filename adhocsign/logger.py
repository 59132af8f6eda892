from rich.console import Console
from functools import lru_cache
from typing import List, Optional


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Get or create the shared Console instance"""
    return Console(highlight=False)


def log_warning(message: str, sink: Optional[List[str]] = None) -> None:
    """Log a non-fatal problem and record it in `sink` for the final summary"""
    get_console().log(f"[yellow]Warning: {message}[/]")
    if sink is not None:
        sink.append(message)
