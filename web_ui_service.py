#!/usr/bin/env python3
"""
Shim module delegating to kangaroo.web_ui_service.
Allows `python web_ui_service.py` from a checkout for local runs.
"""

from kangaroo.web_ui_service import create_app, main, setup_signal_handlers  # noqa: F401


if __name__ == '__main__':
    main()
