#!/usr/bin/env python3
"""
Development launcher for camrelay.

- Loads service configuration (CAMRELAY_CONFIG / env overrides)
- Waits for the relay query API, then serves the management API
- Ctrl-C exits cleanly
"""

import sys

from camrelay.web_api import cli_main


if __name__ == "__main__":
    sys.exit(cli_main(sys.argv[1:]))
