#!/usr/bin/env python3
"""
Autopaste - Clipboard and auto-paste delivery for local dictation

Usage:
    python run_autopaste.py [--host HOST] [--port PORT] [--verbose]

Environment Variables:
    AUTOPASTE_MAX_RETRIES       Retries per operation before giving up
    AUTOPASTE_PASTE_TIMEOUT     Seconds to wait for a paste keystroke sequence
    AUTOPASTE_INTER_OP_DELAY    Seconds between queued operations
    AUTOPASTE_POLL_INTERVAL     Seconds between focused-window polls
    AUTOPASTE_WINDOW_BACKEND    'auto', 'binary', 'xdotool' or 'win32'
    AUTOPASTE_WINDOW_BINARY     Path to the window-enumeration helper
    AUTOPASTE_EXCLUDE_OWNERS    Comma-separated process names never targeted
    AUTOPASTE_HOST / _PORT      Address of the local API
    AUTOPASTE_SETTINGS_FILE     Where persisted settings live
    AUTOPASTE_VERBOSE           Enable verbose logging: '1' or 'true'
"""

from autopaste.__main__ import main

if __name__ == "__main__":
    raise SystemExit(main())
