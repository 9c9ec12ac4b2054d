from setuptools import setup


setup(
    name="ledger-doctor",
    version="0.3.0",
    description="Local reconciliation tools for tax ledger tables: group totals, offsets and debit-family checks",
    packages=["ledger_doctor"],
    python_requires=">=3.10",
    install_requires=[
        "pandas",
        "openpyxl",
    ],
    entry_points={
        "console_scripts": [
            "ledger-doctor=ledger_doctor.cli:main",
        ]
    },
)
