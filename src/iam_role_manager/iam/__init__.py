"""AWS IAM role orchestration."""
