"""Upload-and-convert service with tiered quotas."""
