"""Device lifecycle, screen recording and the retrying test runner."""
