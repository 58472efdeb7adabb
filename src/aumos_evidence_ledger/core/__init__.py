"""Core domain: evidence records, hashing, retention, validation, the ledger, and the audit trail."""
