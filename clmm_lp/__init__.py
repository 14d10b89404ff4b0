"""
Concentrated-liquidity LP simulation and optimization
"""

__version__ = "0.1.0"
