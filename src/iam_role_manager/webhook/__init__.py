"""Admission hooks for Iamrole records."""
