# labsync/storage/schema.py
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", String, primary_key=True),
    Column("last_name", String),
    Column("first_name", String),
    Column("middle_name", String),
    Column("title", String),
    Column("birth_date", Date),
    Column("sex", String(1), nullable=False),  # M / F / U
    Column("street", String),
    Column("city", String),
    Column("state", String),
    Column("zip", String),
    Column("country_code", String),
    Column("telephone", Text, nullable=False, default="[]"),  # lista JSON
    Column("ordering_physician", String),
    Column("attending_physician", String),
    Column("referring_physician", String),
    Column("height_value", Float),
    Column("height_unit", String),
    Column("weight_value", Float),
    Column("weight_unit", String),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

test_results = Table(
    "test_results",
    metadata,
    Column("id", String, primary_key=True),
    Column("test_id", String, nullable=False),
    Column("sample_id", String, nullable=False),
    Column("value", Text, nullable=False),
    Column("units", String),
    Column("reference_range_lower", Float),
    Column("reference_range_upper", Float),
    Column("abnormal_flag", String),
    Column("nature_of_abnormality", String),
    Column("status", String(1), nullable=False),  # C / F / P
    Column("sequence_number", Integer, nullable=False),
    Column("instrument", String),
    Column("completed_date_time", DateTime),
    Column("analyzer_id", String),
    Column("patient_id", String, ForeignKey("patients.id"), nullable=False),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

Index("ix_test_results_sample_id", test_results.c.sample_id)
Index("ix_test_results_analyzer_id", test_results.c.analyzer_id)
Index("ix_test_results_patient_id", test_results.c.patient_id)

REQUIRED_TABLES = ("patients", "test_results")
