"""
Database base models and utilities.

Column helpers shared by the models package.
"""

import enum
from typing import Type

from sqlalchemy import Enum as SAEnum


def status_enum(enum_cls: Type[enum.Enum], length: int = 32) -> SAEnum:
    """
    Column type storing a Python enum by its value as a portable VARCHAR.

    Rows hold the enum's string value ("pending_review", not "PENDING_REVIEW"),
    and the ORM hands back enum members, so services compare against members.
    """
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )
