"""
TradeMaster
Trading assistant core: quote streaming, chart indicators and risk-checked
order execution against a host trading platform
"""

__version__ = "1.0.0"
