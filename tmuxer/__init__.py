"""tmuxer: run and drive long-running shell jobs in tmux over MCP.

Exposes seven MCP tools:
  - create_job:     Start a command in a new tmux window
  - list_jobs:      List all jobs and their status
  - get_job_status: Status of a single job
  - get_job_output: Scrollback of a job's terminal
  - send_input:     Type text and keys ({Enter}, {C-c}, ...) into a job
  - kill_job:       Destroy a job's window
  - cleanup_jobs:   Remove windows of finished jobs

Can run standalone:
    python -m tmuxer
"""

from tmuxer.manager import JobManager
from tmuxer.server import create_server

__all__ = ["JobManager", "create_server"]
