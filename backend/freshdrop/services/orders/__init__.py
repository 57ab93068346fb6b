"""Order lifecycle, claim arbitration and the step workflow engine."""
