"""CLI command groups registered on the root ``labrat`` group."""
