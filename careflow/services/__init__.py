"""Pipeline services: adapters, orchestration, retrieval Q&A."""
