"""Setup script for Online Payments."""
import os

from setuptools import find_packages, setup

HERE = os.path.dirname(os.path.abspath(__file__))

with open(os.path.join(HERE, "requirements.txt")) as requirements:
    INSTALL_REQUIRES = [
        line.strip()
        for line in requirements
        if line.strip() and not line.startswith("#") and not line.startswith("git+")
    ]

setup(
    name="online-payments",
    version="0.1.0",
    description="Online payment processing with Stripe charges, refunds and webhook reconciliation",
    author="ML Roadmap Bootcamp",
    python_requires=">=3.10",
    packages=find_packages(include=["online_payments", "online_payments.*"]),
    install_requires=INSTALL_REQUIRES,
    extras_require={
        "test": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.23.0",
            "pytest-mock>=3.12.0",
            "httpx>=0.25.2",
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
            "online-payments=online_payments.api.main:run",
        ]
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Financial and Insurance Industry",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
