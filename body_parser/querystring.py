from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING

from .base import BaseParser
from .exceptions import QuerystringParseError

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import TypedDict

    class QuerystringCallbacks(TypedDict, total=False):
        on_field_start: Callable[[], None]
        on_field_name: Callable[[str, int, int], None]
        on_field_data: Callable[[str, int, int], None]
        on_field_end: Callable[[], None]
        on_end: Callable[[], None]


class QuerystringState(IntEnum):
    """Querystring parser states.

    These are used to keep track of the state of the parser, and are used to determine
    what to do when new data is encountered.
    """

    BEFORE_FIELD = 0
    FIELD_NAME = 1
    FIELD_DATA = 2


class QuerystringParser(BaseParser):
    """This is a streaming querystring parser.  It will consume data, and call
    the callbacks given when it has data.

    Unlike the parsers that work on the raw body, this one is handed the
    already decoded text of an `application/x-www-form-urlencoded` body, so
    it operates on `str`.  Fields are separated by ``&`` only.

    | Callback Name  | Parameters      | Description                                         |
    |----------------|-----------------|-----------------------------------------------------|
    | on_field_start | None            | Called when a new field is encountered.             |
    | on_field_name  | data, start, end| Called when a portion of a field's name is encountered. |
    | on_field_data  | data, start, end| Called when a portion of a field's data is encountered. |
    | on_field_end   | None            | Called when the end of a field is encountered.      |
    | on_end         | None            | Called when the parser is finished parsing all data.|

    A field without an equals sign (e.g. "...&name&...") is emitted with a
    blank value, and repeated separators are skipped.

    Args:
        callbacks: A dictionary of callbacks.  See the documentation for [`BaseParser`][body_parser.base.BaseParser].
    """

    state: QuerystringState

    def __init__(self, callbacks: QuerystringCallbacks = {}) -> None:
        super().__init__()
        self.state = QuerystringState.BEFORE_FIELD
        self._found_sep = False

        self.callbacks = dict(callbacks)

    def write(self, data: str) -> int:
        """Write some data to the parser, which will parse it into either a
        field name or value, and then pass the corresponding data to the
        underlying callback.

        Args:
            data: The data to write to the parser.

        Returns:
            The number of characters written.
        """
        state = self.state
        found_sep = self._found_sep
        length = len(data)

        i = 0
        while i < length:
            ch = data[i]

            # Depending on our state...
            if state == QuerystringState.BEFORE_FIELD:
                # If the 'found_sep' flag is set, we've already encountered
                # and skipped a single separator, so this one is a duplicate.
                # Otherwise it is the boundary between fields that's supposed
                # to be there.
                if ch == "&":
                    if found_sep:
                        self.logger.debug("Skipping duplicate ampersand at %d", i)
                    else:
                        found_sep = True
                else:
                    # Emit a field-start event, and go to that state.  Also,
                    # reset the "found_sep" flag, for obvious reasons.
                    self.callback("field_start")
                    i -= 1
                    state = QuerystringState.FIELD_NAME
                    found_sep = False

            elif state == QuerystringState.FIELD_NAME:
                # Try and find a separator - we ensure that, if we do, we only
                # look for the equal sign before it.
                sep_pos = data.find("&", i, length)

                # See if we can find an equals sign in the remaining data.  If
                # so, we can immediately emit the field name and jump to the
                # data state.
                if sep_pos != -1:
                    equals_pos = data.find("=", i, sep_pos)
                else:
                    equals_pos = data.find("=", i, length)

                if equals_pos != -1:
                    # Emit this name.
                    self.callback("field_name", data, i, equals_pos)

                    # Jump i to this position.  Note that it will then have 1
                    # added to it below, which means the next iteration of this
                    # loop will inspect the character after the equals sign.
                    i = equals_pos
                    state = QuerystringState.FIELD_DATA
                elif sep_pos != -1:
                    # No equals sign before the separator: emit the name and
                    # end the field without any data callback.
                    self.callback("field_name", data, i, sep_pos)
                    self.callback("field_end")

                    i = sep_pos - 1
                    state = QuerystringState.BEFORE_FIELD
                else:
                    # No separator in this block, so the rest of this chunk
                    # must be a name.
                    self.callback("field_name", data, i, length)
                    i = length

            elif state == QuerystringState.FIELD_DATA:
                sep_pos = data.find("&", i, length)

                # If we found it, callback this bit as data and then go back
                # to expecting to find a field.
                if sep_pos != -1:
                    self.callback("field_data", data, i, sep_pos)
                    self.callback("field_end")

                    # Note that we go to the separator, which brings us to the
                    # "before field" state.  This allows us to properly emit
                    # "field_start" events only when we actually have data for
                    # a field of some sort.
                    i = sep_pos - 1
                    state = QuerystringState.BEFORE_FIELD

                # Otherwise, emit the rest as data and finish.
                else:
                    self.callback("field_data", data, i, length)
                    i = length

            else:  # pragma: no cover (error case)
                msg = "Reached an unknown state %d at %d" % (state, i)
                self.logger.warning(msg)
                e = QuerystringParseError(msg)
                e.offset = i
                raise e

            i += 1

        self.state = state
        self._found_sep = found_sep
        return length

    def finalize(self) -> None:
        """Finalize this parser, which signals to that we are finished parsing,
        if we're still in the middle of a field, an on_field_end callback, and
        then the on_end callback.
        """
        # A field without an equals sign may be the last thing in the body.
        if self.state in (QuerystringState.FIELD_NAME, QuerystringState.FIELD_DATA):
            self.callback("field_end")
        self.callback("end")

    def __repr__(self) -> str:
        return "%s(state=%s)" % (self.__class__.__name__, self.state.name)
