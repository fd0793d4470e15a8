from setuptools import find_packages, setup

setup(
    name="payer-broker",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    python_requires=">=3.11",
    install_requires=[
        "sqlalchemy[asyncio]>=2.0.0",
        "pydantic>=2.0.0",
        "asyncpg>=0.29.0",  # Required for async database operations
        "boto3>=1.28.0",  # SSM / Secrets Manager lookup of the vault key
        "python-dotenv>=1.0.0",
        "cryptography>=41.0.0",  # AES-256-GCM credential encryption
        "httpx>=0.25.0",  # Outbound payer API calls
        "flask>=3.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    description="Payer Data Broker - consent-gated insurance data access for practices",
    author="RCM Team",
)
