"""Display-side collaborators shared by the CLI."""
