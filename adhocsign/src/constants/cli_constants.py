from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Resign iOS app bundles for ad-hoc distribution"


def get_banner_text() -> Text:
    """Return the styled banner shown above the help output."""
    return Text("adhocsign", style="bold cyan")
