from __future__ import annotations
import sys


def main():
    # без аргументов открываем окно, иначе работаем как CLI
    if len(sys.argv) > 1:
        from caterina_tool.main import app
        app()
        return
    from caterina_tool.gui.main_qt import main as gui_main
    gui_main()


if __name__ == "__main__":
    main()
