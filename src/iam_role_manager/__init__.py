"""IAM Role Manager - Main Package.

This package reconciles namespaced IAM role declarations against AWS IAM
and enforces tenant policy restrictions at admission time.
"""

__version__ = "1.0.0"
__author__ = "IAM Role Manager Team"
