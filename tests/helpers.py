class ScriptedSubscription:
    """Answers wait() from a fixed script of True (change) / False (idle)."""

    def __init__(self, script):
        self.script = list(script)
        self.closed = False

    async def wait(self, timeout):
        return self.script.pop(0)

    def close(self):
        self.closed = True
