"""SAS Financier: association finance tracking with role-gated approvals."""

__version__ = "0.1.0"
