"""Shield Audit: PHI audit trail, access control and retention engine."""
