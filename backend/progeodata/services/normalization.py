"""Business record normalization service."""

import re
import logging
from typing import Dict, Any, Optional
import phonenumbers
from nameparser import HumanName

logger = logging.getLogger(__name__)

# Territories with their own phone numbering region
PHONE_REGIONS = {"PR": "PR", "VI": "VI", "GU": "GU"}


class NormalizationService:
    """Normalize and standardize scraped business data."""

    @staticmethod
    def phone_region(state: Optional[str]) -> str:
        return PHONE_REGIONS.get((state or "").upper(), "US")

    @staticmethod
    def normalize_phone(phone: Optional[str], default_region: str = "US") -> Optional[str]:
        """
        Normalize phone number to E.164 format.
        Returns the cleaned original if parsing fails.
        """
        if not phone:
            return None

        try:
            # Remove common separators and whitespace
            cleaned = re.sub(r'[\s\-\(\)\.]', '', phone)

            parsed = phonenumbers.parse(cleaned, default_region)

            if phonenumbers.is_valid_number(parsed):
                return phonenumbers.format_number(
                    parsed,
                    phonenumbers.PhoneNumberFormat.E164
                )
        except phonenumbers.NumberParseException:
            logger.debug(f"Failed to parse phone number: {phone}")

        return phone.strip()

    @staticmethod
    def is_valid_phone(phone: Optional[str], default_region: str = "US") -> bool:
        if not phone:
            return False
        try:
            return phonenumbers.is_valid_number(phonenumbers.parse(phone, default_region))
        except phonenumbers.NumberParseException:
            return False

    @staticmethod
    def normalize_url(url: Optional[str]) -> Optional[str]:
        """
        Normalize URL.
        - Add https:// if missing
        - Remove trailing slashes
        """
        if not url:
            return None

        url = url.strip()
        if not url:
            return None

        if not url.startswith(('http://', 'https://')):
            url = f"https://{url}"

        return url.rstrip('/')

    @staticmethod
    def normalize_text(value: Optional[str]) -> Optional[str]:
        """Collapse whitespace; empty becomes None."""
        if not value:
            return None
        normalized = ' '.join(value.split())
        return normalized or None

    @staticmethod
    def split_owner_name(full_name: Optional[str]) -> Dict[str, Optional[str]]:
        """Parse an owner name into first/last."""
        if not full_name:
            return {'first_name': None, 'last_name': None}

        parsed = HumanName(full_name)
        return {
            'first_name': parsed.first or None,
            'last_name': parsed.last or None
        }

    def normalize_business(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Normalize all modelled fields of a business record.
        Returns a new dict; unknown keys pass through untouched.
        """
        normalized = data.copy()

        for field in ('name', 'address', 'city', 'category'):
            if field in normalized:
                normalized[field] = self.normalize_text(normalized[field])

        if 'category' in normalized and normalized['category']:
            normalized['category'] = normalized['category'].lower()

        if 'postal_code' in normalized and normalized['postal_code']:
            normalized['postal_code'] = str(normalized['postal_code']).strip()

        if 'phone' in normalized:
            region = self.phone_region(normalized.get('state'))
            normalized['phone'] = self.normalize_phone(normalized['phone'], region)

        for field in ('website', 'facebook_url', 'instagram_url', 'source_url'):
            if field in normalized:
                normalized[field] = self.normalize_url(normalized[field])

        logger.debug(f"Normalized business: {normalized.get('name')}")

        return normalized


# Singleton instance
normalization_service = NormalizationService()
