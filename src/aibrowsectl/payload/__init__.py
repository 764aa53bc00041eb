"""Files shipped into generated container images."""
