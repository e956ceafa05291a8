"""Generic tracker engine: schema and entry validation, typed field values."""
