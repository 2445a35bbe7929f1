import customtkinter as ctk
import sys
import io
import logging
import argparse
from PIL import Image
from typing import Callable, Optional

# --- Try to import cairosvg, guide user if missing ---
try:
    import cairosvg
except ImportError:
    print("ERROR: CairoSVG library not found.")
    print("Please install it by running: pip install cairosvg")
    sys.exit(1)

from customtkinter.windows.widgets.theme import ThemeManager

from appfreezer import (
    Config, FilterState, Severity, AppRecord, AppDetails, FreezerController,
    Preferences, ShellChannel, TaskRunner, STATE_FROZEN, STATE_RUNNING,
)

# --- SVG Icon Data -----------------------------------------------------------

class Icons:
    """Stores SVG data for all application icons."""
    # Icons sourced from feathericons.com (MIT License)
    REFRESH = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><polyline points="23 4 23 10 17 10"></polyline><polyline points="1 20 1 14 7 14"></polyline><path d="M3.51 9a9 9 0 0 1 14.85-3.36L23 10M1 14l4.64 4.36A9 9 0 0 0 20.49 15"></path></svg>'
    SHIELD = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><path d="M12 22s8-4 8-10V5l-8-3-8 3v7c0 6 8 10 8 10z"></path></svg>'
    STAR = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><polygon points="12 2 15.09 8.26 22 9.27 17 14.14 18.18 21.02 12 17.77 5.82 21.02 7 14.14 2 9.27 8.91 8.26 12 2"></polygon></svg>'
    STAR_FILLED = STAR.replace('fill="none"', 'fill="currentColor"')
    PACKAGE = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><line x1="16.5" y1="9.4" x2="7.5" y2="4.21"></line><path d="M21 16V8a2 2 0 0 0-1-1.73l-7-4a2 2 0 0 0-2 0l-7 4A2 2 0 0 0 3 8v8a2 2 0 0 0 1 1.73l7 4a2 2 0 0 0 2 0l7-4A2 2 0 0 0 21 16z"></path><polyline points="3.27 6.96 12 12.01 20.73 6.96"></polyline><line x1="12" y1="22.08" x2="12" y2="12"></line></svg>'
    STOP = '<svg xmlns="http://www.w3.org/2000/svg" width="24" height="24" viewBox="0 0 24 24" fill="none" stroke="currentColor" stroke-width="2" stroke-linecap="round" stroke-linejoin="round"><circle cx="12" cy="12" r="10"></circle><rect x="9" y="9" width="6" height="6"></rect></svg>'

class Colors:
    SUCCESS = "#2196F3"
    WARNING = "#FF9800"
    ERROR = "#FF5722"
    RUNNING = "#4CAF50"
    FROZEN = "#FF9800"
    FAVORITE = "#FFC107"

SEVERITY_STYLE = {
    Severity.SUCCESS: ("💬", Colors.SUCCESS, Config.STATUS_DELAY_MS),
    Severity.WARNING: ("⚠️", Colors.WARNING, Config.STATUS_DELAY_MS),
    Severity.ERROR: ("❌", Colors.ERROR, Config.ERROR_DELAY_MS),
}

# --- Utility Classes ---------------------------------------------------------

class IconFactory:
    """Creates and caches theme-aware CTkImage objects from SVG data."""
    _cache = {}

    @staticmethod
    def create(svg_data: str, size: tuple[int, int] = Config.ICON_SIZE, color: Optional[str] = None) -> ctk.CTkImage:
        light_color = color or ThemeManager.theme["CTkLabel"]["text_color"][0]
        dark_color = color or ThemeManager.theme["CTkLabel"]["text_color"][1]

        cache_key = (svg_data, size, light_color, dark_color)
        if cache_key in IconFactory._cache:
            return IconFactory._cache[cache_key]

        light_image = IconFactory._render(svg_data, size, light_color)
        dark_image = IconFactory._render(svg_data, size, dark_color)

        ctk_image = ctk.CTkImage(light_image=light_image, dark_image=dark_image, size=size)
        IconFactory._cache[cache_key] = ctk_image
        return ctk_image

    @staticmethod
    def from_app(record: AppRecord) -> ctk.CTkImage:
        """Uses the app's own icon when the metadata provider supplied a PIL image."""
        if isinstance(record.icon, Image.Image):
            return ctk.CTkImage(light_image=record.icon, dark_image=record.icon, size=Config.APP_ICON_SIZE)
        return IconFactory.create(Icons.PACKAGE, Config.APP_ICON_SIZE)

    @staticmethod
    def _render(svg_data: str, size: tuple[int, int], color: str) -> Image.Image:
        """Renders an SVG string into a PIL Image object with a specified color."""
        colored_svg = svg_data.replace('currentColor', color)
        png_bytes = cairosvg.svg2png(
            bytestring=colored_svg.encode('utf-8'),
            output_width=size[0],
            output_height=size[1]
        )
        return Image.open(io.BytesIO(png_bytes))


class ConsoleLogHandler(logging.Handler):
    """Forwards log records to the Console tab on the Tk thread."""
    def __init__(self, app: 'App'):
        super().__init__()
        self.app = app
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s", "%H:%M:%S"))

    def emit(self, record: logging.LogRecord):
        try:
            self.app.after(0, self.app.log_to_console, self.format(record))
        except RuntimeError:
            # Tk is gone (window closed while a worker was still logging)
            pass

# --- UI Components -----------------------------------------------------------

class Sidebar(ctk.CTkFrame):
    """The left-hand sidebar for filters and actions."""
    def __init__(self, master: 'App', transport: str):
        super().__init__(master, width=250)
        self.master = master
        self.grid(row=0, column=0, rowspan=2, padx=10, pady=10, sticky="nsw")

        title_frame = ctk.CTkFrame(self, fg_color="transparent")
        title_frame.pack(pady=(20, 10), padx=10, fill="x")

        ctk.CTkLabel(title_frame, text="App Freezer", font=ctk.CTkFont(size=22, weight="bold")).pack()
        ctk.CTkLabel(title_frame, text="Freeze user apps with root", font=ctk.CTkFont(size=16)).pack()
        ctk.CTkLabel(title_frame, text=f"Device: {transport}", font=ctk.CTkFont(size=10), text_color="gray50").pack()

        self.filter_selector = ctk.CTkSegmentedButton(
            self, values=[FilterState.ALL.value, FilterState.FAVORITES.value],
            command=lambda value: master.controller.set_filter(FilterState(value))
        )
        self.filter_selector.pack(fill="x", padx=10, pady=10)
        self.filter_selector.set(FilterState.ALL.value)

        ctk.CTkFrame(self, height=2, fg_color="gray").pack(fill="x", padx=10, pady=10)

        self.refresh_button = ctk.CTkButton(self, text="Refresh List", image=IconFactory.create(Icons.REFRESH), anchor="w", command=master.controller.reload)
        self.refresh_button.pack(fill="x", padx=10, pady=5)

        self.root_button = ctk.CTkButton(self, text="Check Root Access", image=IconFactory.create(Icons.SHIELD), anchor="w", command=master.controller.retry_access)
        self.root_button.pack(fill="x", padx=10, pady=5)

        self.root_label = ctk.CTkLabel(self, text="Root: checking...", text_color="gray50")
        self.root_label.pack(anchor="w", padx=20, pady=10)

    def get_widgets_to_disable(self):
        return [self.refresh_button, self.root_button]

class MainContent(ctk.CTkFrame):
    """The main content area with the app list and console tabs."""
    def __init__(self, master: 'App'):
        super().__init__(master, fg_color="transparent")
        self.master = master
        self.grid(row=0, column=1, rowspan=2, padx=10, pady=10, sticky="nsew")
        self.grid_rowconfigure(0, weight=1)
        self.grid_columnconfigure(0, weight=1)

        self.tab_view = ctk.CTkTabview(self)
        self.tab_view.grid(row=0, column=0, sticky="nsew")
        self.tab_view.add("Apps")
        self.tab_view.add("Console")

        apps_tab = self.tab_view.tab("Apps")
        apps_tab.grid_rowconfigure(0, weight=1)
        apps_tab.grid_columnconfigure(0, weight=1)
        self.apps_frame = ctk.CTkScrollableFrame(apps_tab)
        self.apps_frame.grid(row=0, column=0, sticky="nsew")
        self.pagination_frame = ctk.CTkFrame(apps_tab, height=40)
        self.pagination_frame.grid(row=1, column=0, sticky="ew", pady=(5,0))
        self._create_pagination_controls()

        console_tab = self.tab_view.tab("Console")
        console_tab.grid_rowconfigure(0, weight=1)
        console_tab.grid_columnconfigure(0, weight=1)
        self.console_text = ctk.CTkTextbox(console_tab, state="disabled")
        self.console_text.grid(row=0, column=0, sticky="nsew")

    def _create_pagination_controls(self):
        """Creates the pagination widgets once to prevent flickering."""
        self.pagination_container = ctk.CTkFrame(self.pagination_frame, fg_color="transparent")
        self.pagination_container.pack(expand=True)

        self.prev_btn = ctk.CTkButton(self.pagination_container, text="<< Prev", command=lambda: self.master.change_page(-1))
        self.prev_btn.pack(side="left", padx=10, pady=5)

        self.page_label = ctk.CTkLabel(self.pagination_container, text="")
        self.page_label.pack(side="left", padx=10, pady=5)

        self.next_btn = ctk.CTkButton(self.pagination_container, text="Next >>", command=lambda: self.master.change_page(1))
        self.next_btn.pack(side="left", padx=10, pady=5)

        self.pagination_container.pack_forget() # Hide by default

# --- Dialog Windows ----------------------------------------------------------

class AccessDeniedDialog(ctk.CTkToplevel):
    """Explains how to grant root and offers a retry."""
    MESSAGE = (
        "App Freezer needs root access to freeze other apps.\n\n"
        "Please make sure that:\n"
        "1. The device is rooted\n"
        "2. This app is allowed in your root manager\n"
        "3. You press 'Retry' to try again"
    )

    def __init__(self, master: 'App', retry_callback: Callable):
        super().__init__(master)
        self.retry_callback = retry_callback
        self.title("Root Access Required")
        self.transient(master)
        self.after(20, self.grab_set)
        self.protocol("WM_DELETE_WINDOW", self.destroy)
        self.resizable(False, False)

        ctk.CTkLabel(self, text=self.MESSAGE, wraplength=350, justify="left").pack(padx=20, pady=(20, 10))

        button_frame = ctk.CTkFrame(self, fg_color="transparent")
        button_frame.pack(padx=20, pady=(10, 20), fill="x")
        button_frame.grid_columnconfigure((0, 1), weight=1)

        retry_button = ctk.CTkButton(button_frame, text="Retry", command=self._retry_event)
        retry_button.grid(row=0, column=0, padx=(0, 5), sticky="ew")
        ctk.CTkButton(button_frame, text="Cancel", command=self.destroy).grid(row=0, column=1, padx=(5, 0), sticky="ew")

        self.after(10, self._center_window)
        retry_button.focus_set()

    def _retry_event(self):
        self.destroy()
        self.retry_callback()

    def _center_window(self):
        self.update_idletasks()
        x = self.winfo_screenwidth() // 2 - self.winfo_width() // 2
        y = self.winfo_screenheight() // 2 - self.winfo_height() // 2
        self.geometry(f"+{x}+{y}")

class DetailsDialog(ctk.CTkToplevel):
    """Dialog to display the detailed state of one app."""
    STATE_TEXT = {
        STATE_FROZEN: "Frozen 🔒",
        STATE_RUNNING: "Running ✅",
    }

    def __init__(self, master: 'App', details: AppDetails, frozen: bool):
        super().__init__(master)
        self.master_app = master
        self.details = details

        self.title(f"{details.display_name} details")
        self.geometry("480x300")
        self.transient(master)
        self.after(20, self.grab_set)

        ctk.CTkLabel(self, text=details.display_name, font=ctk.CTkFont(size=16, weight="bold")).pack(pady=10)

        info_frame = ctk.CTkFrame(self, fg_color="transparent")
        info_frame.pack(expand=True, fill="both", padx=10, pady=10)
        info_frame.grid_columnconfigure(1, weight=1)

        rows = [
            ("Package", details.identifier),
            ("Favorite", "Yes ⭐" if details.favorite else "No"),
            ("State", self.STATE_TEXT.get(details.state, "Unknown ❓")),
            ("Version", details.version or "N/A"),
        ]
        for row_counter, (key, value) in enumerate(rows):
            ctk.CTkLabel(info_frame, text=key, font=ctk.CTkFont(weight="bold")).grid(row=row_counter, column=0, sticky="nw", padx=10, pady=5)
            ctk.CTkLabel(info_frame, text=value, justify="left").grid(row=row_counter, column=1, sticky="nw", padx=10, pady=5)

        button_frame = ctk.CTkFrame(self, fg_color="transparent")
        button_frame.pack(side="bottom", fill="x", padx=10, pady=10)
        button_frame.grid_columnconfigure((0, 1), weight=1)

        if frozen:
            ctk.CTkButton(button_frame, text="Force Stop", image=IconFactory.create(Icons.STOP), command=self.force_stop).grid(row=0, column=0, padx=(0, 5), sticky="ew")
        ctk.CTkButton(button_frame, text="Close", command=self.destroy).grid(row=0, column=1, padx=(5, 0), sticky="ew")

    def force_stop(self):
        self.master_app.controller.request_force_stop(self.details.identifier)
        self.destroy()

# --- Main Application --------------------------------------------------------

class App(ctk.CTk):
    def __init__(self, channel: ShellChannel, prefs: Preferences):
        super().__init__()
        self.title(Config.TITLE)
        self.geometry(Config.GEOMETRY)

        ctk.set_appearance_mode("System")
        ctk.set_default_color_theme("blue")

        self.page: int = 1
        self._status_job: Optional[str] = None

        self.runner = TaskRunner()
        self.controller = FreezerController.create(
            channel, prefs, self.runner,
            on_changed=self.render,
            on_status=self.show_status,
            on_access_denied=self.show_access_denied,
            on_details=self.show_details,
        )

        self.grid_columnconfigure(1, weight=1)
        self.grid_rowconfigure(1, weight=1)

        self.sidebar = Sidebar(self, channel.describe())
        self.main_content = MainContent(self)

        self.status_bar = ctk.CTkLabel(self, text="Loading...", anchor="w")
        self.status_bar.grid(row=2, column=0, columnspan=2, padx=10, pady=5, sticky="ew")
        self._default_text_color = self.status_bar.cget("text_color")

        self.console_handler = ConsoleLogHandler(self)
        logging.getLogger().addHandler(self.console_handler)

        self.protocol("WM_DELETE_WINDOW", self._on_close)
        self.after(Config.POLL_INTERVAL_MS, self._pump)
        self.after(100, self.controller.start)

    def _pump(self):
        try:
            self.runner.drain()
        finally:
            self.after(Config.POLL_INTERVAL_MS, self._pump)

    def _on_close(self):
        logging.getLogger().removeHandler(self.console_handler)
        if self._status_job:
            self.after_cancel(self._status_job)
        self.runner.shutdown(wait=False)
        self.destroy()

    def log_to_console(self, message: str):
        self.main_content.console_text.configure(state="normal")
        self.main_content.console_text.insert("end", message + "\n")
        self.main_content.console_text.configure(state="disabled")
        self.main_content.console_text.see("end")

    # --- Status banner ---

    def show_status(self, message: str, severity: Severity):
        """Shows a message in the status bar, then reverts to the summary."""
        if self._status_job:
            self.after_cancel(self._status_job)
        prefix, color, delay = SEVERITY_STYLE[severity]
        self.status_bar.configure(text=f"{prefix} {message}", text_color=color)
        self._status_job = self.after(delay, self._restore_status)

    def _restore_status(self):
        self._status_job = None
        self.status_bar.configure(text=self.controller.summary_text(), text_color=self._default_text_color)

    def show_access_denied(self):
        AccessDeniedDialog(self, self.controller.retry_access)

    def show_details(self, details: AppDetails):
        record = self.controller.session.catalog.get(details.identifier)
        DetailsDialog(self, details, frozen=record is not None and not record.enabled)

    # --- App list ---

    def render(self):
        controller = self.controller
        busy = "disabled" if controller.loading else "normal"
        for widget in self.sidebar.get_widgets_to_disable():
            widget.configure(state=busy)
        has_root = controller.session.has_privilege
        self.sidebar.root_label.configure(
            text="Root: granted" if has_root else "Root: not available",
            text_color=Colors.RUNNING if has_root else Colors.ERROR
        )
        if self._status_job is None:
            self.status_bar.configure(text="Loading..." if controller.loading else controller.summary_text())
        self.update_page_view()

    def update_page_view(self):
        frame = self.main_content.apps_frame
        data = self.controller.visible()

        for widget in frame.winfo_children(): widget.destroy()

        if not data:
            text = "No favorite apps yet." if self.controller.session.filter_state == FilterState.FAVORITES else "No apps found."
            ctk.CTkLabel(frame, text=text).pack(pady=20)
            self.main_content.pagination_container.pack_forget()
            return

        total_pages = (len(data) + Config.ITEMS_PER_PAGE - 1) // Config.ITEMS_PER_PAGE
        self.page = max(1, min(self.page, total_pages))
        start = (self.page - 1) * Config.ITEMS_PER_PAGE
        end = start + Config.ITEMS_PER_PAGE

        for record in data[start:end]:
            item_frame = ctk.CTkFrame(frame, border_width=1)
            item_frame.pack(fill="x", pady=2, padx=5)
            self._create_app_list_item(item_frame, record)

        if total_pages > 1:
            self.main_content.pagination_container.pack(expand=True)
            self.main_content.page_label.configure(text=f"Page {self.page} of {total_pages}")
            self.main_content.prev_btn.configure(state="normal" if self.page > 1 else "disabled")
            self.main_content.next_btn.configure(state="normal" if self.page < total_pages else "disabled")
        else:
            self.main_content.pagination_container.pack_forget()

    def _add_hover_effect(self, widgets: list[ctk.CTkBaseClass]):
        master_frame = widgets[0] # Assume the first widget is the main frame
        original_color = master_frame.cget("fg_color")
        hover_color = ThemeManager.theme["CTkButton"]["hover_color"]
        for widget in widgets:
            widget.bind("<Enter>", lambda e, f=master_frame, c=hover_color: f.configure(fg_color=c))
            widget.bind("<Leave>", lambda e, f=master_frame, c=original_color: f.configure(fg_color=c))

    def _create_app_list_item(self, master: ctk.CTkFrame, record: AppRecord):
        controller = self.controller
        master.grid_columnconfigure(1, weight=1)

        icon_label = ctk.CTkLabel(master, text="", image=IconFactory.from_app(record))
        icon_label.grid(row=0, column=0, rowspan=2, padx=10, pady=5)
        name_label = ctk.CTkLabel(master, text=record.display_name, font=ctk.CTkFont(weight="bold"),
                                  text_color=None if record.enabled else "gray50")
        name_label.grid(row=0, column=1, sticky="w", padx=5, pady=(5,0))
        id_label = ctk.CTkLabel(master, text=record.identifier, text_color="gray")
        id_label.grid(row=1, column=1, sticky="w", padx=5, pady=(0,5))

        status_text, status_color = ("Running", Colors.RUNNING) if record.enabled else ("Frozen", Colors.FROZEN)
        status_label = ctk.CTkLabel(master, text=status_text, text_color=status_color)
        status_label.grid(row=0, column=2, rowspan=2, sticky="e", padx=10)

        switch = ctk.CTkSwitch(master, text="")
        if record.enabled: switch.select()
        switch.configure(command=lambda s=switch, r=record: controller.request_toggle(r.identifier, s.get() == 1))
        if controller.is_pending(record.identifier): switch.configure(state="disabled")
        switch.grid(row=0, column=3, rowspan=2, padx=5)

        favorite = controller.is_favorite(record.identifier)
        star_image = IconFactory.create(Icons.STAR_FILLED, color=Colors.FAVORITE) if favorite else IconFactory.create(Icons.STAR)
        star_button = ctk.CTkButton(master, text="", image=star_image, width=28, height=28, fg_color="transparent",
                                    command=lambda r=record: controller.toggle_favorite(r.identifier))
        star_button.grid(row=0, column=4, rowspan=2, padx=(5, 10))

        clickable_widgets = [master, icon_label, name_label, id_label, status_label]
        for widget in clickable_widgets:
            widget.bind("<Button-1>", lambda e, r=record: controller.request_launch(r.identifier))
            widget.bind("<Button-3>", lambda e, r=record: controller.request_details(r.identifier))
        self._add_hover_effect(clickable_widgets)

    def change_page(self, delta: int):
        self.page += delta
        self.update_page_view()
        self._scroll_to_top_animated(self.main_content.apps_frame)

    def _scroll_to_top_animated(self, frame: ctk.CTkScrollableFrame):
        """Animates scrolling of a CTkScrollableFrame to the top."""
        def animation_step():
            current_pos = frame._parent_canvas.yview()[0]
            if current_pos < 0.001:
                frame._parent_canvas.yview_moveto(0)
                return
            new_pos = current_pos * 0.85
            frame._parent_canvas.yview_moveto(new_pos)
            self.after(15, animation_step)
        animation_step()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Freeze and unfreeze user apps on a rooted Android device.")
    parser.add_argument("--adb", action="store_true", help="run device commands through 'adb shell' instead of a local su")
    parser.add_argument("-s", "--serial", help="adb device serial (implies --adb)")
    parser.add_argument("--prefs", default=Config.PREFS_FILE, help="preferences file (default: %(default)s)")
    parser.add_argument("--debug", action="store_true", help="log every device command")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s"
    )
    channel = ShellChannel(use_adb=args.adb or bool(args.serial), serial=args.serial)
    app = App(channel, Preferences(args.prefs))
    app.mainloop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
