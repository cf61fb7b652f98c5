"""Value objects and pure normalizers shared by the scan pipeline."""
