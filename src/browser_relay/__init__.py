"""
Browser Relay

將遠端控制指令（語音助理、IDE 自動化 client）轉送到本地已登入的 Chrome 分頁執行，
並回傳對應的結果。
"""

__version__ = "1.0.0"
