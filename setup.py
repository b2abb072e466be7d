# setup.py
from setuptools import setup, find_namespace_packages

setup(
    name="rosca-chain",
    version="0.1.0",
    packages=find_namespace_packages(include=["rosca_chain", "rosca_chain.*"]),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",           # witnesses, ledger records, store values
        "PyNaCl",            # random circle ids
        "psutil",            # monitoring
        "cryptography",      # secp256k1 member keys and witness signatures
        "pycryptodome",      # keccak transaction ids
        "plyvel",            # local circle store
        "prometheus_client", # metrics
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "rosca-chain=rosca_chain.cli:main",
        ],
    },
)
