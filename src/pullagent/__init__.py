"""pullagent: self-updating convergence agent for headless build machines.

Each machine pulls its desired state from a git repository on a schedule,
decrypts the secrets bundle in memory, reconciles local resources, and
records the outcome. Maintenance jobs and a disk monitor run alongside.
"""

__version__ = "0.3.0"
