"""Library App - Loans & Membership Service

This package contains the application modules:
- REST API (api.py)
- Registration and login (auth.py)
- Loan lifecycle (loans.py)
- Membership card allocation (membership_cards.py)
- Users, books and authors (users.py, books.py, authors.py)
- Database layer and row scoping (database.py)
- CLI interface (main.py)
"""

__version__ = "1.0.0"
