"""
Alpaca Hub: ASCOM Alpaca server for several astronomy instruments.

Drives ZWO EAF focusers and CAA rotators through the vendor SDK, and
iOptron mounts and Robofocus focusers over serial lines, from one
tick-based scheduler.
"""

__version__ = "1.0.0"
