"""Run summaries and report rendering."""
