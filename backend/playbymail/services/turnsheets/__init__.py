"""Turn sheet codes, rendering, OCR, processors, storage and ingestion."""
