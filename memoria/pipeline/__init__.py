"""Pipeline stages: classification, enrichment, embedding and memo evolution."""
