"""Natural-language spreadsheet agent: providers, tools, budgets and a reversible change ledger."""

__version__ = "0.3.0"

__all__ = ["__version__"]
