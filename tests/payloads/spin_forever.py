# never terminates on its own; records its pid first so tests can check the kill
import os
import sys

PIDFILE = "__PIDFILE__"

with open(PIDFILE, "w") as f:
    f.write(str(os.getpid()))
sys.stdout.write("spinning\n")
sys.stdout.flush()
while True:
    pass
