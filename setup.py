from setuptools import setup

setup(
    name="ledger-orchestrator",
    version="0.1.0",
    py_modules=[
        "account_provisioner",
        "account_resolver",
        "account_sizes",
        "address_book",
        "argument_encoder",
        "instruction_catalog",
        "key_vault",
        "ledger_client",
        "market_orchestrator",
        "orchestrator_config",
        "orchestrator_errors",
        "submission_retrier",
        "transaction_assembler",
    ],
    python_requires=">=3.9",
    install_requires=[
        "solana>=0.30.2",
        "solders>=0.18.1",
        "borsh-construct>=0.1.0",
        "python-dotenv>=1.0.1",
        "requests>=2.31.0",
        "aiohttp>=3.9.3",
        "certifi>=2024.2.2",
        "base58>=2.1.1",
    ],
    extras_require={
        "test": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "ledger-orchestrator=market_orchestrator:main",
        ],
    },
)
