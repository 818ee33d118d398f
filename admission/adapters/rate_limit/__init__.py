"""Admission control adapters.

The host application talks to the abstract engine and the config registry.
The in-memory fixed-window engine is the only backend; state lives in the
current process and is rebuilt from scratch on restart.
"""
