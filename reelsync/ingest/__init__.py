"""
Ingestion: Zoom credentials, the event stream, recording downloads and the
event processor that drives the pipeline.
"""
