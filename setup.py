from setuptools import setup


setup(
    name="sheet-ledger",
    version="0.3.0",
    description="Import messy transaction spreadsheets into a ledger API and export them back as reports",
    packages=["sheet_ledger", "sheet_ledger.ledger_modules"],
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "requests",
        "simplejson",
    ],
    extras_require={
        "excel-legacy": ["xlrd"],
        "ods": ["odfpy"],
        "all": ["xlrd", "odfpy"],
    },
    entry_points={
        "console_scripts": [
            "sheet-ledger=sheet_ledger.cli:main",
        ]
    },
)
