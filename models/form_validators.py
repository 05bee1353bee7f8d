"""
Form Validation Models for identity verification input.

Provides Pydantic validators for:
- Identity number clean-up (spaces, dashes and dots removed)
- Name validation (letters in any script, spaces, hyphens, apostrophes)
- Birth date parsing (several common formats accepted)
- Gender normalisation (M/F)

Presence and range rules that must hold before a registry call (minimum
identity number length, required names, birth date not in the future)
are enforced by the verifiers so they apply however a subject is built.
"""
import re
from datetime import date
from typing import Optional, Literal

from pydantic import BaseModel, Field, field_validator

from models.domain import VerificationSubject
from utils.date_utils import parse_birth_date

IDENTITY_NUMBER_SEPARATORS = re.compile(r"[\s\-./]")
MULTISPACE = re.compile(r"\s+")

GENDER_ALIASES = {
    "M": "M", "MALE": "M", "H": "M", "HOMME": "M",
    "F": "F", "FEMALE": "F", "FEMME": "F",
}


def _is_name_char(ch: str) -> bool:
    return ch.isalpha() or ch in " -'’"


class VerificationSubjectForm(BaseModel):
    """
    Subject data as entered in the verification form.

    Secondary attributes are optional and only improve match confidence.
    """

    identity_number: str = Field(
        ...,
        description="National identity number (separators are ignored)",
        max_length=32,
    )
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    birth_date: Optional[date] = Field(
        None,
        description="Date of birth (YYYY-MM-DD, DD/MM/YYYY, DD.MM.YYYY ...)",
    )
    gender: Optional[Literal["M", "F"]] = None

    birth_town: Optional[str] = Field(None, max_length=100)
    birth_country: Optional[str] = Field(None, max_length=100)
    nationality: Optional[str] = Field(None, max_length=100)
    residence_address_line1: Optional[str] = Field(None, max_length=200)
    residence_address_line2: Optional[str] = Field(None, max_length=200)
    residence_town: Optional[str] = Field(None, max_length=100)

    @field_validator("identity_number")
    @classmethod
    def clean_identity_number(cls, v: str) -> str:
        v = IDENTITY_NUMBER_SEPARATORS.sub("", v).upper()
        if v and not v.isalnum():
            raise ValueError("Identity number must contain only letters and digits")
        return v

    @field_validator("first_name", "last_name")
    @classmethod
    def validate_name(cls, v: Optional[str], info) -> Optional[str]:
        """Letters (any script), spaces, hyphens and apostrophes only."""
        if v is None:
            return v
        v = MULTISPACE.sub(" ", v.strip())
        if not v:
            return None
        if not all(_is_name_char(ch) for ch in v):
            raise ValueError(
                f"{info.field_name} must contain only letters, spaces, hyphens and apostrophes"
            )
        return v

    @field_validator("birth_date", mode="before")
    @classmethod
    def parse_date(cls, v):
        if v is None or isinstance(v, date):
            return v
        if isinstance(v, str) and not v.strip():
            return None
        parsed = parse_birth_date(v)
        if parsed is None:
            raise ValueError("Birth date must be a valid date, e.g. 1990-05-12 or 12/05/1990")
        return parsed

    @field_validator("gender", mode="before")
    @classmethod
    def normalize_gender(cls, v):
        if v is None:
            return v
        key = str(v).strip().upper()
        if not key:
            return None
        if key not in GENDER_ALIASES:
            raise ValueError("Gender must be M or F")
        return GENDER_ALIASES[key]

    @field_validator(
        "birth_town", "birth_country", "nationality",
        "residence_address_line1", "residence_address_line2", "residence_town",
    )
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = MULTISPACE.sub(" ", v.strip())
        return v or None

    def to_subject(self, user_id: str) -> VerificationSubject:
        return VerificationSubject(
            user_id=user_id,
            identity_number=self.identity_number,
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            birth_date=self.birth_date,
            gender=self.gender,
            birth_town=self.birth_town,
            birth_country=self.birth_country,
            nationality=self.nationality,
            residence_address_line1=self.residence_address_line1,
            residence_address_line2=self.residence_address_line2,
            residence_town=self.residence_town,
        )
