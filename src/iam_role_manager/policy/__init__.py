"""Policy documents, trust policy construction, validation and drift comparison."""
