"""Call allowance accounting."""
