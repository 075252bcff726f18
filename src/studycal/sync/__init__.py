"""Two-way synchronization between local records and the remote calendar."""
