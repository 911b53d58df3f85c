from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, StringConstraints

# ISO 4217 alphabetic code, normalized to upper case.
CurrencyCode = Annotated[str, StringConstraints(strip_whitespace=True, to_upper=True, min_length=3, max_length=3)]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    """Read model for rows carrying ``TimestampMixin`` columns."""

    created_at: datetime
    updated_at: datetime
