"""
Setup file for the clmm_lp package
"""

from setuptools import setup, find_packages

setup(
    name="clmm_lp",
    version="0.1.0",
    packages=find_packages(include=["clmm_lp", "clmm_lp.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "seaborn",
        "pyyaml",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": ["clmm-lp=clmm_lp.main:main"],
    },
    python_requires=">=3.8",
    author="Le Ngoc Binh",
    author_email="lengocbinh2001@gmail.com",
    description="Concentrated-liquidity LP simulation and range optimization",
    keywords="defi, uniswap, clmm, liquidity-provision, impermanent-loss",
)
