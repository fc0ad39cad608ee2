"""Setup script for Quote Payments."""
from pathlib import Path

from setuptools import find_packages, setup

HERE = Path(__file__).parent

setup(
    name="quote-payments",
    version="1.0.0",
    description="Quote lifecycle and payment reconciliation service with Stripe integration",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["quote_payments", "quote_payments.*"]),
    install_requires=[
        line.strip()
        for line in (HERE / "requirements.txt").read_text().splitlines()
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "httpx>=0.27.0",
            "aiosqlite>=0.19.0",
        ],
        "dev": [
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.4.0",
            "pytest-cov>=4.1.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "quote-payments=quote_payments.__main__:main",
        ]
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
