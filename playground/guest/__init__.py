"""Guest-side program bundled with the package (the default runtime index)."""
