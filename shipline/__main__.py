"""Allow ``python -m shipline``."""

from shipline.cli import app

app(prog_name="shipline")
