import os
import sys
import time

interval = float(os.environ.get("HEARTBEAT_SECONDS", "5"))
name = os.environ.get("WORKER_NAME", "example")

print(f"Example worker {name} started (pid {os.getpid()})")
sys.stdout.flush()

count = 0
while True:
    count += 1
    print(f"Example worker {name}: Heartbeat {count}")
    sys.stdout.flush()
    time.sleep(interval)
