"""HTTP API for the LabCare workflow."""
