"""
Vending Machine Service
=======================
FSM-driven purchase workflow for vending machines
"""

__version__ = "1.0.0"
