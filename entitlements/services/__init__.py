"""Provider gateway, webhook ingestion, subscription lifecycle and usage gating."""
