"""Name, version and banner for the RALPH CLI."""

__codename__ = "RALPH"
__version__ = "0.3.0"
__tagline__ = "Agentic Coding Loop"

BANNER = r"""
  ____      _     _     ____   _   _
 |  _ \    / \   | |   |  _ \ | | | |
 | |_) |  / _ \  | |   | |_) || |_| |
 |  _ <  / ___ \ | |___|  __/ |  _  |
 |_| \_\/_/   \_\|_____|_|    |_| |_|
"""
