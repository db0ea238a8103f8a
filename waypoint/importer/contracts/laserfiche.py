"""Column contract for the Laserfiche DAEP placement export.

Header names are matched exactly; the export is machine-generated and the
column mapper is not applied to it.
"""

from __future__ import annotations

from typing import Iterable, Tuple

EXTERNAL_SYSTEM = "laserfiche"
IMPORT_TYPE = "laserfiche_daep"

INSTANCE_ID = "Instance ID"
FIRST_NAME = "First_Name"
LAST_NAME = "Last_Name"
CAMPUS = "Campus"
STATUS = "Status"
CURRENT_STEP = "Current step"
CURRENT_STAGE = "Current stage"
DATE_OF_VIOLATION = "Date_of_Violation"
REFERRAL_DATE = "Referral_Date"
GRADE = "Grade"
GENDER = "Gender"
DURATION_DAYS = "Number"
FIRST_DAY_ISS = "First_Day_of_ISS"
FIRST_DAY_OSS = "First_Day_OSS"
DAEP_LAST_DATE = "Last_Date_of_Enrollment_at_DAEP"

LASERFICHE_COLUMNS: Tuple[str, ...] = (
    INSTANCE_ID,
    FIRST_NAME,
    LAST_NAME,
    CAMPUS,
    STATUS,
    CURRENT_STEP,
    CURRENT_STAGE,
    DATE_OF_VIOLATION,
    REFERRAL_DATE,
    GRADE,
    GENDER,
    DURATION_DAYS,
    FIRST_DAY_ISS,
    FIRST_DAY_OSS,
    DAEP_LAST_DATE,
)

LASERFICHE_KEY_COLUMNS: Tuple[str, ...] = (INSTANCE_ID, FIRST_NAME, LAST_NAME)


def missing_key_columns(headers: Iterable[str]) -> Tuple[str, ...]:
    """Return key columns absent from ``headers`` (exact, case-sensitive)."""

    present = {header.strip() for header in headers if header is not None}
    return tuple(column for column in LASERFICHE_KEY_COLUMNS if column not in present)
