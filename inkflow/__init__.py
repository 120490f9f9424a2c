"""inkflow: OCR shard-completion coordinator and document processing pipeline."""

__version__ = "1.0.0"
