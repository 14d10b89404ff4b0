"""
Main entry point for CLMM LP strategy simulation
"""

import sys

from clmm_lp.main import main

if __name__ == '__main__':
    sys.exit(main())
