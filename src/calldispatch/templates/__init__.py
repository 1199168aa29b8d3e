"""Call script rendering."""
