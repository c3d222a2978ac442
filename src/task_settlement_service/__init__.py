"""Task settlement service: staged escrow, applicant selection and task lifecycle."""

__version__ = "0.1.0"
