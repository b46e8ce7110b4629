"""Wrappers around the external remote-shell and tunnel-server tools."""
