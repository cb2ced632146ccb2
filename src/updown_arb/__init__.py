"""Arbitrage engine for 5-minute Up/Down crypto markets on Polymarket."""
