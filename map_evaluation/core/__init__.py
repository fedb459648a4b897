"""Core evaluation modules and the volumetric map model they consume."""
