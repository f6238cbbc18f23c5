"""kangaroo-cli: operator command line for the dashboard API."""
