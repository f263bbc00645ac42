"""
Input Validation Utilities

Provides validation for enqueue inputs:
- Contact (phone number) normalization to gateway digits format
- Message body sanitization and length checks
"""
import re


class ValidationPatterns:
    """Regex patterns for validation"""

    NON_DIGITS = re.compile(r"\D")

    # Normalized contact: country code + area code + subscriber, digits only
    CONTACT_DIGITS = re.compile(r"^\d{12,15}$")

    # Control characters except newline and tab
    CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


class PhoneNumberValidator:
    """Phone number validation and normalization"""

    @staticmethod
    def normalize(phone: str, country_code: str = "55") -> str:
        """
        Normalize a phone number to the digits-only format the gateway expects.

        - strips every non-digit character
        - keeps numbers already carrying the country code (12+ digits)
        - replaces a leading trunk prefix 0 with the country code
        - prefixes the country code to local numbers (11 digits or fewer)

        Args:
            phone: Phone number in any human format
            country_code: Default country code digits

        Returns:
            Normalized digits string (may still be invalid, see validate)
        """
        if not phone:
            return ""

        digits = ValidationPatterns.NON_DIGITS.sub("", phone)
        if not digits:
            return ""

        if digits.startswith(country_code) and len(digits) >= 12:
            return digits
        if digits.startswith("0"):
            return country_code + digits[1:]
        if len(digits) <= 11:
            return country_code + digits
        return digits

    @staticmethod
    def validate(phone: str, country_code: str = "55") -> bool:
        """
        Validate that a phone number normalizes to 12-15 digits.

        Args:
            phone: Phone number to validate
            country_code: Default country code digits

        Returns:
            True if valid, False otherwise
        """
        normalized = PhoneNumberValidator.normalize(phone, country_code)
        return bool(ValidationPatterns.CONTACT_DIGITS.match(normalized))

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number for logging (privacy).

        Returns:
            Masked phone number (e.g., 55119999****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class TextSanitizer:
    """Text sanitization for outbound message bodies"""

    @staticmethod
    def sanitize(text: str) -> str:
        """
        Prepare a message body for storage.

        Trims surrounding whitespace and removes null bytes and control
        characters, keeping newlines and tabs. Length is checked by the caller
        so that an over-long body is rejected instead of silently truncated.
        """
        if not text:
            return ""
        return ValidationPatterns.CONTROL_CHARS.sub("", text.strip())

    @staticmethod
    def contains_word(text: str, words: list[str]) -> str | None:
        """
        Whole-word, case-insensitive search.

        Returns:
            The first matching word from ``words`` or None
        """
        if not text:
            return None
        for word in words:
            if re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE):
                return word
        return None
