import re
from typing import Optional


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalisation and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn10(isbn: str) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) != 10 or not s[:-1].isdigit():
            return False
        total = sum(i * int(ch) for i, ch in enumerate(s[:-1], 1))
        check = s[-1]
        if check == "X":
            check_val = 10
        elif check.isdigit():
            check_val = int(check)
        else:
            return False
        # weights 1..10, so the check digit contributes 10 * check
        return (total + 10 * check_val) % 11 == 0

    @staticmethod
    def is_valid_isbn13(isbn: str) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) != 13 or not s.isdigit():
            return False
        total = 0
        for i, ch in enumerate(s[:-1]):
            factor = 1 if i % 2 == 0 else 3
            total += factor * int(ch)
        check_val = (10 - (total % 10)) % 10
        return check_val == int(s[-1])

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            return ISBNValidator.is_valid_isbn10(s)
        if len(s) == 13:
            return ISBNValidator.is_valid_isbn13(s)
        return False


class TextValidator:
    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        t = title.strip()
        return bool(t) and any(c.isalnum() for c in t)

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if text is None:
            return ""
        # catalog descriptions arrive with HTML markup
        cleaned = re.sub(r"<[^>]*>", "", text)
        return re.sub(r"\s+", " ", cleaned).strip()
