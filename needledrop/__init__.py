"""Console entry point for the NeedleDrop server; see ``needledrop.__main__``."""
