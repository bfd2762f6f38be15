"""Ingestion package for uploaded documents.

Contains the pipeline that turns a stored upload into embedded, searchable
chunks. See pipeline.py for the step-by-step flow and its CLI.
"""
