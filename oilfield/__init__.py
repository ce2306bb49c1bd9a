"""
Oilfield Backend Application

Settlement engine for an idle mining economy:
- Mining accrual and machine actions
- Fuel purchases paid in external currency
- Daily cashout rounds with proportional payouts
- Auto-exchange of claim-tokens with manual fallback
"""

__version__ = "0.1.0"
