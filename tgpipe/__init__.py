"""tgpipe: drive a Telegram bot from any executable.

Each chat gets its own handler process. Messages from the chat are written
to the handler's stdin; whatever the handler prints is sent back, with
``//`` directives for files, keyboards, edits and deletes.
"""

__version__ = "0.1.0"
