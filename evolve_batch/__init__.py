"""evolve-batch — run OpenEvolve jobs on preemptible AWS Batch capacity."""

__version__ = "0.1.0"
