import psutil

from nodeharness.process.process import Process


def find_processes_by_cmdline(fragments: list[str]) -> list[Process]:
    """
    Find processes whose command line contains every given fragment.

    Matching on a launch-unique argument (such as a token output path)
    avoids picking up unrelated processes sharing the same binary name.
    """
    matched_processes: list[Process] = []

    for proc in psutil.process_iter(["cmdline"]):
        try:
            cmdline = proc.info["cmdline"] or []
            if cmdline and all(fragment in cmdline for fragment in fragments):
                matched_processes.append(Process(proc))
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    return matched_processes
