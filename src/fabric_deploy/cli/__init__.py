"""fabric-deploy command-line interface."""
