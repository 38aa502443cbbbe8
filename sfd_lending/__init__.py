"""
SFD Lending Engine

Loan lifecycle and subsidy allocation core for a microfinance platform
connecting MEREF with decentralized finance institutions (SFDs). All
financial math uses Decimal and every state change is audited.
"""

__version__ = "1.0.0"
