"""
MCP Broker — подключение внешних MCP серверов и вызов их инструментов.
"""
