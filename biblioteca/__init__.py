"""Biblioteca - library management client package

This package contains the core client modules including:
- Session store and credential verification (session.py, auth.py)
- Loan/return lifecycle (loans.py)
- Domain records (models.py)
- Durable local storage (database.py)
- REST gateways (services/)
"""
