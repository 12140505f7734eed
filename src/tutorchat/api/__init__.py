"""HTTP surface of the TutorChat transport proxy."""
