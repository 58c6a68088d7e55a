"""Core components for IAM Role Manager.

This module contains the foundational components including AWS client
management, configuration handling and the error taxonomy.
"""
