#
# Decimal floating point values whose exponent may itself be a value of the same kind,
# giving magnitudes such as 1e1000 or 1e(1e100) far beyond the range of a native float.
#

import copy
import logging
import math
import re
import sys
import threading
from collections import namedtuple
from enum import IntFlag, IntEnum
from fractions import Fraction
from functools import cmp_to_key

import attr

__all__ = ('Context', 'DefaultContext', 'get_context', 'set_context', 'local_context',
           'Flags', 'Compare', 'HandlerKind',
           'ScaledValue', 'TextFormat', 'DefaultFormat', 'AsciiFormat', 'ParseError',
           'ScaledValueError', 'Invalid', 'InvalidAdd', 'InvalidDivide', 'InvalidPower',
           'InvalidSqrt', 'InvalidLog', 'DivisionByZero', 'DivideByZero', 'LogZero',
           'Promotion',
           'OP_ADD', 'OP_SUBTRACT', 'OP_MULTIPLY', 'OP_DIVIDE', 'OP_POWER',
           'OP_INTEGER_POWER', 'OP_SQRT', 'OP_LN', 'OP_LOG10', 'OP_EXP', 'OP_NORMALIZE',
           'EXPONENT_MIN', 'EXPONENT_MAX', 'PRECISION_CLIFF',
           'ZERO', 'ONE', 'NAN', 'INFINITY', 'NEG_INFINITY', 'total_order_key')


logger = logging.getLogger(__name__)

# Plain exponents are 64-bit signed integers.  Exponents outside this range are promoted
# to nested exponents.
EXPONENT_MAX = (1 << 63) - 1
EXPONENT_MIN = -(1 << 63)

# If the exponents of two addends differ by more than this, the smaller cannot change the
# 15-17 significant digits of the larger's double mantissa and is dropped.
PRECISION_CLIFF = 15

# Plain exponents a native float can represent, including subnormals.
NATIVE_EXP_MAX = 308
NATIVE_EXP_MIN = -324

# A nested exponent below 10^19 may fit the plain range and is demoted.
DEMOTE_EXP_LIMIT = 19

# Operands with exponents below this are too small for exp() to differ from one.
EXP_TINY_EXPONENT = -17

# Operation names
OP_ADD = 'add'
OP_SUBTRACT = 'subtract'
OP_MULTIPLY = 'multiply'
OP_DIVIDE = 'divide'
OP_POWER = 'power'
OP_INTEGER_POWER = 'integer_power'
OP_SQRT = 'sqrt'
OP_LN = 'ln'
OP_LOG10 = 'log10'
OP_EXP = 'exp'
OP_NORMALIZE = 'normalize'


# Four-way result of the compare() operation.
class Compare(IntEnum):
    LESS_THAN = 0
    EQUAL = 1
    GREATER_THAN = 2
    UNORDERED = 3


# Operation status flags.
class Flags(IntFlag):
    INVALID     = 0x01
    DIV_BY_ZERO = 0x02
    PROMOTED    = 0x04


_reversed_comparison = {
    Compare.LESS_THAN: Compare.GREATER_THAN,
    Compare.EQUAL: Compare.EQUAL,
    Compare.GREATER_THAN: Compare.LESS_THAN,
    Compare.UNORDERED: Compare.UNORDERED,
}


@attr.s(slots=True, kw_only=True, cmp=False)
class TextFormat:
    '''Controls the output of conversion to strings.'''

    # Plain exponents from expanded_min to expanded_max inclusive are output as a
    # positional decimal, e.g. "0.00015" or "1500000".  Other plain exponents are output
    # after the mantissa and an 'e', e.g. "1.5e7".
    expanded_min = attr.ib(default=-4)
    expanded_max = attr.ib(default=6)
    # If True positive exponents display a '+'.
    force_exp_sign = attr.ib(default=False)
    # If True, the exponent character is 'E'.
    upper_case = attr.ib(default=False)
    # The string output for infinity.  Negative infinity is preceded by a '-'.
    inf = attr.ib(default='∞')
    # The string output for NaNs
    nan = attr.ib(default='NaN')
    # Placed between a mantissa and its parenthesized nested exponent
    times = attr.ib(default=' × 10^')

    def exponent_str(self, exponent):
        '''Return the formatted plain exponent.'''
        sign = '-' if exponent < 0 else '+' if self.force_exp_sign else ''
        return f'{sign}{abs(exponent)}'

    def format_non_finite(self, value):
        '''Returns the output text for infinities and NaNs.'''
        if value.is_nan():
            return self.nan
        return '-' + self.inf if value.is_negative() else self.inf

    def format_significand(self, sign, digits):
        '''Return the digits with a decimal point after the leading one.'''
        text = f'{digits[0]}.{digits[1:]}' if len(digits) > 1 else digits
        return '-' + text if sign else text

    def format_decimal(self, sign, exponent, digits):
        '''sign is True if the number is negative.  digits is a string of significant digits
        and exponent is the plain exponent of the leading digit, i.e. the decimal point
        appears exponent digits after the leading digit.
        '''
        digits = digits.rstrip('0') or '0'

        if not self.expanded_min <= exponent <= self.expanded_max:
            exp_char = 'E' if self.upper_case else 'e'
            return f'{self.format_significand(sign, digits)}{exp_char}{self.exponent_str(exponent)}'

        parts = ['-'] if sign else []
        point = exponent + 1
        if point <= 0:
            parts.extend(('0.', '0' * -point, digits))
        else:
            if point > len(digits):
                digits += (point - len(digits)) * '0'
            if point < len(digits):
                parts.extend((digits[:point], '.', digits[point:]))
            else:
                parts.append(digits)
        return ''.join(parts)

    def format_nested(self, sign, digits, exponent_text):
        '''Return the text of a value with a nested exponent, exponent_text being the nested
        exponent already formatted.'''
        return f'{self.format_significand(sign, digits)}{self.times}({exponent_text})'


# Default format for string output
DefaultFormat = TextFormat()

# The same with ASCII-only tokens.  Its output is also accepted by from_string().
AsciiFormat = TextFormat(inf='inf', nan='nan', times=' * 10^')


#
# Signals
#

class ScaledValueError(ArithmeticError):
    '''All arithmetic exceptions signalled by this module subclass from this.

    ScaledValueError expects two arguments:

         def __init__(self, op_tuple, result):

    op_tuple is a tuple of the operation name and operands causing the signal.  result is
    the value that default exception handling should deliver.

    Numeric edge cases never raise by default: signalling raises a flag in the context
    and delivers the default result.  A context can be told to raise them instead.
    '''

    flag_to_raise = 0

    @property
    def op_tuple(self):
        return self.args[0]

    @property
    def default_result(self):
        return self.args[1]

    def signal(self, context=None):
        '''Call to signal an exception.  This routine handles the exception according to
        the handling specified in the context.'''
        context = context or get_context()
        kind, handler = context.handler(self.__class__)
        result = self.default_result
        logger.debug('%s signalled by %s', self.__class__.__name__, self.op_tuple[0])

        if kind != HandlerKind.NO_FLAG:
            context.flags |= self.flag_to_raise
            if kind == HandlerKind.RECORD_EXCEPTION:
                context.exceptions.append(self)

        if kind == HandlerKind.RAISE:
            raise self
        if kind == HandlerKind.SUBSTITUTE_VALUE:
            result = handler(self, context)

        return result


class Invalid(ScaledValueError):
    '''Invalid operation base class.  Signalled when an operation on non-NaN operands has no
    usefully defineable result.  The default result is a NaN.'''

    flag_to_raise = Flags.INVALID


class InvalidAdd(Invalid):
    '''Signalled when adding two differently-signed infinities or subtracting two like-signed
    infinities.'''


class InvalidDivide(Invalid):
    '''Signalled when dividing two zeroes or two infinities.'''


class InvalidPower(Invalid):
    '''Signalled by 0^0, and by raising a negative number to a non-integral power.'''


class InvalidSqrt(Invalid):
    '''Signalled if the sqrt operand is less than zero.'''


class InvalidLog(Invalid):
    '''Signalled when taking the logarithm of a negative number.'''


class DivisionByZero(ScaledValueError, ZeroDivisionError):
    '''Base class of division by zero errors.  Division by zero is signalled when an operation
    on finite operands delivers an exact infinite result.'''

    flag_to_raise = Flags.DIV_BY_ZERO


class DivideByZero(DivisionByZero):
    '''A divide operation with zero divisor, or zero raised to a negative power.'''


class LogZero(DivisionByZero):
    '''The logarithm of zero.'''


class Promotion(ScaledValueError):
    '''Signalled when a plain exponent would overflow its 64-bit range and is promoted to a
    nested exponent.  The default result is the nested exponent.'''

    flag_to_raise = Flags.PROMOTED


class ParseError(ValueError):
    '''Raised when text cannot be converted to a ScaledValue.

    part is 'input', 'mantissa' or 'exponent' and fragment is the offending substring.'''

    def __init__(self, text, part, fragment):
        if not text.strip():
            message = 'cannot convert an empty string'
        elif part == 'input':
            message = f'cannot convert {text!r}'
        else:
            message = f'invalid {part} {fragment!r} in {text!r}'
        super().__init__(message)
        self.text = text
        self.part = part
        self.fragment = fragment


class HandlerKind(IntEnum):
    '''Indicates how a signalled exception should be handled.'''
    # Deliver the default result and raise the associated flag
    DEFAULT = 0

    # Deliver the default result without raising the associated flag
    NO_FLAG = 1

    # Default handling, and also record the exception in the context
    RECORD_EXCEPTION = 2

    # Default handling but substitute a value for the default result.  A handler must be
    # provided with signature
    #
    #    def handler(exception, context):
    #
    # The value returned by the handler will become the operation's result.
    SUBSTITUTE_VALUE = 3

    # Raise the exception immediately
    RAISE = 4

    def requires_handler(self):
        return self == HandlerKind.SUBSTITUTE_VALUE


class Context:
    '''The execution context for operations.  Carries the status flags and how each signal
    is handled.'''

    __slots__ = ('flags', 'handlers', 'exceptions')

    def __init__(self, *, flags=0):
        '''flags represents the initially raised flags.'''
        self.flags = flags
        self.handlers = {}
        self.exceptions = []

    def copy(self):
        '''Return a (deep) copy of the context.'''
        # A deep copy is needed because handlers and exceptions are mutable containers
        return copy.deepcopy(self)

    def set_handler(self, exc_classes, kind, handler=None):
        classes = (exc_classes, ) if not isinstance(exc_classes, (tuple, list)) else exc_classes
        if not all(issubclass(exc_class, ScaledValueError) for exc_class in classes):
            raise TypeError('all exception classes must be subclasses of ScaledValueError')
        if not isinstance(kind, HandlerKind):
            raise TypeError('kind must be a HandlerKind instance')
        if (handler is not None) ^ kind.requires_handler():
            if handler is None:
                raise ValueError(f'handler not given for kind {kind!r}')
            else:
                raise ValueError(f'handler given for kind {kind!r}')
        pair = (kind, handler)
        for exc_class in classes:
            self.handlers[exc_class] = pair

    def handler(self, exc_class):
        '''Return a (handler_kind, callback) pair for a signal class.'''
        if not issubclass(exc_class, ScaledValueError):
            raise TypeError('exc_class must be a subclass of ScaledValueError')

        for cls in exc_class.mro():
            handler = self.handlers.get(cls)
            if handler:
                return handler

        return HandlerKind.DEFAULT, None

    def __repr__(self):
        return f'<Context flags={self.flags!r}>'


#
# The value type
#

class ScaledValue(namedtuple('ScaledValue', 'mantissa exponent')):
    '''Internal Representation
       -----------------------

    A value is mantissa * 10^exponent.  The mantissa is a Python float carrying the sign
    and all significant digits.  The exponent is one of:

        a plain exponent: a Python int in the 64-bit range [EXPONENT_MIN, EXPONENT_MAX];

        a nested exponent: a ScaledValue whose value lies outside that range.  It is
        only created when a plain exponent would overflow.

    Values are always normalized:

        zero is (0.0, 0);

        infinities and NaNs are (mantissa, 0) - the exponent is meaningless;

        otherwise 1 <= |mantissa| < 10.

    Values are immutable.  Every operation returns a new normalized value.
    '''

    __slots__ = ()

    def __new__(cls, mantissa, exponent=0):
        '''Create a normalized value mantissa * 10^exponent.  exponent is an integer or a
        ScaledValue; integers outside the 64-bit range are promoted.
        '''
        if isinstance(mantissa, int):
            mantissa = float(mantissa)
        if not isinstance(mantissa, float):
            raise TypeError('mantissa must be a float')
        if not isinstance(exponent, (int, ScaledValue)):
            raise TypeError('exponent must be an integer or a ScaledValue')
        return _normalized(mantissa, exponent, None)

    @classmethod
    def from_parts(cls, mantissa, exponent):
        '''Return mantissa * 10^exponent, normalized.'''
        return cls(mantissa, exponent)

    @classmethod
    def from_float(cls, value):
        '''Return the float value decomposed into mantissa and exponent.

        The mantissa takes the digits of the shortest text that round-trips the float, so
        to_float() recovers any value with up to 16 significant digits.
        '''
        if not isinstance(value, float):
            raise TypeError('from_float requires a float')
        if value == 0:
            return ZERO
        if not math.isfinite(value):
            return _make(value, 0)
        digits, _, exponent = repr(value).partition('e')
        result = _parse_decimal(digits)
        return _normalized(result.mantissa, result.exponent + int(exponent or 0), None)

    from_native = from_float

    @classmethod
    def from_int(cls, value):
        '''Return the integer value.  Integers beyond the range of a float keep their
        leading 17 digits.'''
        if not isinstance(value, int):
            raise TypeError('from_int requires an integer')
        try:
            return cls.from_float(float(value))
        except OverflowError:
            magnitude = abs(value)
            shift = int((magnitude.bit_length() - 1) * log10_2) - 17
            mantissa = float(magnitude // 10 ** shift)
            return cls(-mantissa if value < 0 else mantissa, shift)

    @classmethod
    def from_string(cls, string):
        '''Convert a string to a ScaledValue.  Raises ParseError if the string is malformed.

        Accepted are decimals such as "-123.45", scientific notation whose exponent is
        recursively a value, such as "1.23e456" or "1e1e100", the nested output form
        "1 × 10^(1e100)", and the tokens "nan", "inf", "infinity" and "∞".
        '''
        if not isinstance(string, str):
            raise TypeError('from_string requires a string')
        return _parse(string, string.strip())

    @classmethod
    def from_value(cls, value):
        '''Return value converted to a ScaledValue.'''
        if isinstance(value, ScaledValue):
            return value
        if isinstance(value, float):
            return cls.from_float(value)
        if isinstance(value, int):
            return cls.from_int(value)
        if isinstance(value, str):
            return cls.from_string(value)
        raise TypeError(f'cannot convert {type(value).__name__} to ScaledValue')

    ##
    ## Non-computational operations
    ##

    def is_zero(self):
        '''Return True if the value is zero.'''
        return self.mantissa == 0

    def is_finite(self):
        '''Return True if the value is neither infinite nor a NaN.'''
        return math.isfinite(self.mantissa)

    def is_nan(self):
        '''Return True if this is a NaN.'''
        return math.isnan(self.mantissa)

    def is_infinite(self):
        '''Return True if the value is infinite.'''
        return math.isinf(self.mantissa)

    def is_negative(self):
        '''Return True if the value is less than zero.'''
        return self.mantissa < 0

    def is_nested(self):
        '''Return True if the exponent is a nested ScaledValue.'''
        return isinstance(self.exponent, ScaledValue)

    def exponent_value(self):
        '''Return the exponent as a ScaledValue.'''
        return _exponent_value(self.exponent)

    def to_float(self):
        '''Return the value as a float, or None if it lies outside the range of a float.

        The result is the correctly rounded value of the mantissa's shortest text scaled
        by the exponent.  This float image is what the value compares and hashes as
        against Python numbers.
        '''
        if self.is_zero() or not self.is_finite():
            return self.mantissa
        if self.is_nested() or not NATIVE_EXP_MIN <= self.exponent <= NATIVE_EXP_MAX:
            return None
        result = float(f'{self.mantissa!r}e{self.exponent}')
        if result == 0 or math.isinf(result):
            return None
        return result

    def to_float_saturating(self):
        '''Return the value as a float.  Values too large for a float become a signed
        infinity and values too small a signed zero.'''
        result = self.to_float()
        if result is None:
            if _compare_exponents(self.exponent, 0) == Compare.GREATER_THAN:
                return math.copysign(math.inf, self.mantissa)
            return math.copysign(0.0, self.mantissa)
        return result

    def _integer_parity(self):
        '''Return 0 or 1 if the value is an even or odd integer, otherwise None.  Finite values
        too large for a float's precision to hold a units digit are even.'''
        if self.is_nested():
            return 0 if self.exponent.mantissa > 0 else None
        if self.exponent > 15:
            return 0
        number = self.to_float()
        if number is None or not number.is_integer():
            return None
        return int(number) % 2

    ##
    ## Quiet computational operations
    ##

    def copy_abs(self):
        '''Return this value with a positive sign.'''
        if self.mantissa < 0:
            return _make(-self.mantissa, self.exponent)
        return self

    def copy_negate(self):
        '''Return this value with the opposite sign.'''
        if self.is_zero():
            return self
        return _make(-self.mantissa, self.exponent)

    def sign(self):
        '''Return -1, 0 or 1 according to the sign of the value; NaNs return a NaN.'''
        if self.is_nan() or self.is_zero():
            return self
        return ONE if self.mantissa > 0 else MINUS_ONE

    ##
    ## Arithmetic
    ##

    def add(self, rhs, context=None):
        '''Return the sum of this value and rhs.'''
        rhs = _convert(rhs)
        return _add((OP_ADD, self, rhs), self, rhs, context)

    def subtract(self, rhs, context=None):
        '''Return the difference of this value and rhs.'''
        rhs = _convert(rhs)
        return _add((OP_SUBTRACT, self, rhs), self, rhs.copy_negate(), context)

    def multiply(self, rhs, context=None):
        '''Returns the product of this value and rhs.'''
        rhs = _convert(rhs)
        op_tuple = (OP_MULTIPLY, self, rhs)

        if self.is_zero() or rhs.is_zero():
            return ZERO

        if not self.is_finite() or not rhs.is_finite():
            return ScaledValue.from_float(self.mantissa * rhs.mantissa)

        exponent = _add_exponents(op_tuple, self.exponent, rhs.exponent, context)
        return _normalized(self.mantissa * rhs.mantissa, exponent, context)

    def divide(self, rhs, context=None):
        '''Return this value divided by rhs.'''
        rhs = _convert(rhs)
        op_tuple = (OP_DIVIDE, self, rhs)

        if rhs.is_zero():
            if not self.is_finite():
                return self
            if self.is_zero():
                return InvalidDivide(op_tuple, NAN).signal(context)
            return DivideByZero(op_tuple, INFINITY if self.mantissa > 0
                                else NEG_INFINITY).signal(context)

        if self.is_zero():
            return ZERO

        if not self.is_finite() or not rhs.is_finite():
            result = ScaledValue.from_float(self.mantissa / rhs.mantissa)
            if result.is_nan() and not (self.is_nan() or rhs.is_nan()):
                result = InvalidDivide(op_tuple, result).signal(context)
            return result

        exponent = _subtract_exponents(op_tuple, self.exponent, rhs.exponent, context)
        return _normalized(self.mantissa / rhs.mantissa, exponent, context)

    def integer_power(self, n, context=None):
        '''Return this value raised to the integer power n by repeated squaring.'''
        if not isinstance(n, int):
            raise TypeError('integer_power requires an integer')
        if n == 0:
            return ONE
        if n < 0:
            return ONE.divide(self.integer_power(-n, context), context)

        result = ONE
        base = self
        while n:
            if n & 1:
                result = result.multiply(base, context)
            n >>= 1
            if n:
                base = base.multiply(base, context)
        return result

    def power(self, exponent, context=None):
        '''Return this value raised to the power exponent.

        With a plain exponent e and a power p that fits a float this is m^p * 10^(e*p);
        otherwise 10^(p * log10(self)).  Either way the fractional part of the resulting
        decimal exponent is folded into the mantissa.
        '''
        exponent = _convert(exponent)
        op_tuple = (OP_POWER, self, exponent)

        if self.is_zero():
            if exponent.is_nan():
                return exponent
            if exponent.is_zero():
                return InvalidPower(op_tuple, NAN).signal(context)
            if exponent.is_negative():
                return DivideByZero(op_tuple, INFINITY).signal(context)
            return ZERO

        if exponent.is_zero():
            return ONE

        if not self.is_finite() or not exponent.is_finite():
            return ScaledValue.from_float(math.pow(self.to_float_saturating(),
                                                   exponent.to_float_saturating()))

        if self.is_negative():
            parity = exponent._integer_parity()
            if parity is None:
                return InvalidPower(op_tuple, NAN).signal(context)
            result = self.copy_abs().power(exponent, context)
            return result.copy_negate() if parity else result

        p = exponent.to_float()
        # |m^p| < 10^300 so the power cannot overflow a float
        if p is not None and not self.is_nested() and abs(p) < 300:
            scale = ScaledValue.from_int(self.exponent).multiply(exponent, context)
            return _normalized(self.mantissa ** p, scale, context)

        return _exp10(exponent.multiply(self.log10(context), context), context)

    def sqrt(self, context=None):
        '''Return the square root of this value.'''
        if self.is_negative():
            return InvalidSqrt((OP_SQRT, self), NAN).signal(context)
        if self.is_zero() or not self.is_finite():
            return ScaledValue.from_float(math.sqrt(self.mantissa))
        return self.power(HALF, context)

    def ln(self, context=None):
        '''Return the natural logarithm: ln(m * 10^e) = ln(m) + e * ln(10).'''
        op_tuple = (OP_LN, self)
        if self.is_zero():
            return LogZero(op_tuple, NEG_INFINITY).signal(context)
        if self.is_nan():
            return self
        if self.is_negative():
            return InvalidLog(op_tuple, NAN).signal(context)
        if self.is_infinite():
            return self

        exponent_term = self.exponent_value().multiply(LN_10, context)
        return ScaledValue.from_float(math.log(self.mantissa)).add(exponent_term, context)

    def log10(self, context=None):
        '''Return the base-10 logarithm: log10(m * 10^e) = log10(m) + e.'''
        op_tuple = (OP_LOG10, self)
        if self.is_zero():
            return LogZero(op_tuple, NEG_INFINITY).signal(context)
        if self.is_nan():
            return self
        if self.is_negative():
            return InvalidLog(op_tuple, NAN).signal(context)
        if self.is_infinite():
            return self

        return ScaledValue.from_float(math.log10(self.mantissa)).add(self.exponent_value(),
                                                                     context)

    def exp(self, context=None):
        '''Return e raised to the power of this value, computed as 10^(x * log10(e)).'''
        if not self.is_finite():
            return ScaledValue.from_float(math.exp(self.mantissa))
        if self.is_zero() or _compare_exponents(self.exponent,
                                                EXP_TINY_EXPONENT) == Compare.LESS_THAN:
            return ONE
        return _exp10(self.multiply(LOG10_E, context), context)

    ##
    ## Comparisons
    ##

    def compare(self, rhs):
        '''Return this value vs rhs as one of the four comparison constants.'''
        rhs = _convert(rhs)
        lhs_m, rhs_m = self.mantissa, rhs.mantissa

        if math.isnan(lhs_m) or math.isnan(rhs_m):
            return Compare.UNORDERED

        # Infinities compare as floats; the magnitude of a finite operand is irrelevant
        if math.isinf(lhs_m) or math.isinf(rhs_m):
            return _compare_numbers(lhs_m, rhs_m)

        # Zeroes, and operands of differing sign, are ordered by their mantissas' signs
        if lhs_m == 0 or rhs_m == 0 or (lhs_m < 0) != (rhs_m < 0):
            return _compare_numbers(lhs_m, rhs_m)

        # Non-zero finite numbers with equal signs.  Larger exponents mean larger
        # magnitudes as mantissas are normalized.
        comp = _compare_exponents(self.exponent, rhs.exponent)
        if comp == Compare.EQUAL:
            return _compare_numbers(lhs_m, rhs_m)
        if lhs_m < 0:
            return _reversed_comparison[comp]
        return comp

    def compare_total(self, rhs):
        '''As for compare() but a total order: comparisons involving NaNs return EQUAL.'''
        comp = self.compare(rhs)
        if comp == Compare.UNORDERED:
            return Compare.EQUAL
        return comp

    def max(self, rhs):
        '''Return the larger of this value and rhs.  NaNs propagate.'''
        rhs = _convert(rhs)
        comp = self.compare(rhs)
        if comp == Compare.UNORDERED:
            return self if self.is_nan() else rhs
        return rhs if comp == Compare.LESS_THAN else self

    def min(self, rhs):
        '''Return the smaller of this value and rhs.  NaNs propagate.'''
        rhs = _convert(rhs)
        comp = self.compare(rhs)
        if comp == Compare.UNORDERED:
            return self if self.is_nan() else rhs
        return rhs if comp == Compare.GREATER_THAN else self

    ##
    ## Text
    ##

    def to_string(self, text_format=None):
        '''Return the value as text.  See the TextFormat docstring for output control.'''
        text_format = text_format or DefaultFormat
        if not self.is_finite():
            return text_format.format_non_finite(self)
        if self.is_zero():
            return '0'
        digits = _mantissa_digits(self.mantissa)
        if self.is_nested():
            return text_format.format_nested(self.is_negative(), digits,
                                             self.exponent.to_string(text_format))
        return text_format.format_decimal(self.is_negative(), self.exponent, digits)

    def __str__(self):
        return self.to_string()

    ##
    ## Python number protocol
    ##

    def __abs__(self):
        return self.copy_abs()

    def __neg__(self):
        return self.copy_negate()

    def __pos__(self):
        return self

    def __eq__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare == Compare.EQUAL

    def __ne__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare != Compare.EQUAL

    def __lt__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare == Compare.LESS_THAN

    def __le__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare in (Compare.EQUAL, Compare.LESS_THAN)

    def __ge__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare in (Compare.EQUAL, Compare.GREATER_THAN)

    def __gt__(self, other):
        compare = compare_any(self, other)
        if compare is None:
            return NotImplemented
        return compare == Compare.GREATER_THAN

    def __bool__(self):
        return not self.is_zero()

    def __float__(self):
        return self.to_float_saturating()

    def __add__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return self.add(other)

    def __sub__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return self.subtract(other)

    def __mul__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return self.multiply(other)

    def __truediv__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return self.divide(other)

    def __pow__(self, other):
        if isinstance(other, int):
            return self.integer_power(other)
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return self.power(other)

    def __radd__(self, other):
        return self.__add__(other)

    def __rsub__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return other.subtract(self)

    def __rmul__(self, other):
        return self.__mul__(other)

    def __rtruediv__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return other.divide(self)

    def __rpow__(self, other):
        other = convert_for_arith(other)
        if other is None:
            return NotImplemented
        return other.power(self)

    def __hash__(self):
        '''Python hash.  Must hash equally to other types with the same value.'''
        value = self.to_float()
        if value is not None:
            return hash(value)
        # Nested values equal no Python number
        if self.is_nested():
            return hash((self.mantissa, self.exponent))
        return _hash_exact(self.mantissa, self.exponent)


#
# Normalization
#

def _make(mantissa, exponent):
    '''Build a ScaledValue from parts already in canonical form.'''
    return tuple.__new__(ScaledValue, (mantissa, exponent))


def _normalized(mantissa, exponent, context):
    '''Return a normalized ScaledValue equal to mantissa * 10^exponent.'''
    mantissa, exponent = _normalize(mantissa, exponent, context)
    return _make(mantissa, exponent)


def _normalize(mantissa, exponent, context):
    '''Return the canonical (mantissa, exponent) pair for mantissa * 10^exponent.

    The mantissa is brought into [1, 10) in one step using its decimal logarithm; the
    adjustment is added to the exponent, promoting a plain exponent that overflows.
    '''
    if mantissa == 0:
        return 0.0, 0
    if not math.isfinite(mantissa):
        return mantissa, 0

    if isinstance(exponent, ScaledValue):
        mantissa, exponent = _demote(mantissa, exponent)
        if mantissa == 0 or not math.isfinite(mantissa):
            return mantissa, 0
    elif not EXPONENT_MIN <= exponent <= EXPONENT_MAX:
        exponent = _promote((OP_NORMALIZE, mantissa, exponent),
                            ScaledValue.from_int(exponent), context)

    shift = math.floor(math.log10(abs(mantissa)))
    mantissa = _scale10(mantissa, -shift)
    # Correct for rounding in the logarithm
    if abs(mantissa) >= 10.0:
        mantissa /= 10.0
        shift += 1
    elif abs(mantissa) < 1.0:
        mantissa *= 10.0
        shift -= 1

    if shift:
        exponent = _shift_exponent(exponent, shift, context)
    return mantissa, exponent


def _shift_exponent(exponent, shift, context):
    '''Return exponent + shift, an integer, promoting a plain exponent that overflows.'''
    if isinstance(exponent, int):
        total = exponent + shift
        if EXPONENT_MIN <= total <= EXPONENT_MAX:
            return total
        promoted = ScaledValue.from_float(float(exponent)).add(ScaledValue.from_int(shift),
                                                                context)
        return _promote((OP_NORMALIZE, exponent, shift), promoted, context)

    shifted = exponent.add(ScaledValue.from_int(shift), context)
    parts = _split_exponent(shifted)
    return shifted if parts is None else parts[0]


def _demote(mantissa, exponent):
    '''Return (mantissa, exponent) for a value with a nested exponent.

    Non-finite exponents become sentinels, and an exponent in the plain range becomes
    plain with its fractional part folded into the mantissa.
    '''
    if exponent.is_nan():
        return math.nan, 0
    if exponent.is_infinite():
        if exponent.mantissa > 0:
            return math.copysign(math.inf, mantissa), 0
        return 0.0, 0

    parts = _split_exponent(exponent)
    if parts is None:
        return mantissa, exponent
    whole, fraction = parts
    return mantissa * 10.0 ** fraction, whole


def _split_exponent(value):
    '''Return (whole, fraction) if the finite value's integer part is in the plain exponent
    range, otherwise None.'''
    # 10 raised to a magnitude below any float is 1
    if _compare_exponents(value.exponent, NATIVE_EXP_MIN) == Compare.LESS_THAN:
        return 0, 0.0
    if isinstance(value.exponent, int) and value.exponent < DEMOTE_EXP_LIMIT:
        number = _scale10(value.mantissa, value.exponent)
        whole = math.floor(number)
        if EXPONENT_MIN <= whole <= EXPONENT_MAX:
            return whole, number - whole
    return None


def _promote(op_tuple, exponent, context):
    '''Signal promotion of a plain exponent to the nested exponent given.'''
    logger.debug('exponent promoted to %s', exponent)
    return Promotion(op_tuple, exponent).signal(context)


def _add_exponents(op_tuple, lhs, rhs, context):
    '''Return the sum of two exponents, promoting plain exponents whose sum overflows.'''
    if isinstance(lhs, int) and isinstance(rhs, int):
        total = lhs + rhs
        if EXPONENT_MIN <= total <= EXPONENT_MAX:
            return total
        promoted = ScaledValue.from_float(float(lhs)).add(ScaledValue.from_float(float(rhs)),
                                                          context)
        return _promote(op_tuple, promoted, context)
    return _exponent_value(lhs).add(_exponent_value(rhs), context)


def _subtract_exponents(op_tuple, lhs, rhs, context):
    '''Return the difference of two exponents, promoting plain exponents whose difference
    overflows.'''
    if isinstance(lhs, int) and isinstance(rhs, int):
        difference = lhs - rhs
        if EXPONENT_MIN <= difference <= EXPONENT_MAX:
            return difference
        promoted = ScaledValue.from_float(float(lhs)).subtract(
            ScaledValue.from_float(float(rhs)), context)
        return _promote(op_tuple, promoted, context)
    return _exponent_value(lhs).subtract(_exponent_value(rhs), context)


def _exponent_value(exponent):
    if isinstance(exponent, int):
        return ScaledValue.from_int(exponent)
    return exponent


def _compare_exponents(lhs, rhs):
    '''Compare two normalized exponents.  A nested exponent lies outside the plain range so
    its sign alone orders it against a plain one.'''
    if isinstance(lhs, int):
        if isinstance(rhs, int):
            return _compare_numbers(lhs, rhs)
        return Compare.LESS_THAN if rhs.mantissa > 0 else Compare.GREATER_THAN
    if isinstance(rhs, int):
        return Compare.GREATER_THAN if lhs.mantissa > 0 else Compare.LESS_THAN
    return lhs.compare(rhs)


def _compare_numbers(lhs, rhs):
    '''Compare two Python numbers.'''
    if lhs < rhs:
        return Compare.LESS_THAN
    if lhs > rhs:
        return Compare.GREATER_THAN
    if lhs == rhs:
        return Compare.EQUAL
    return Compare.UNORDERED


def _scale10(value, n):
    '''Return the float value * 10^n for an integer n, avoiding intermediate overflow.'''
    if n >= 0:
        while n > 300:
            value *= 1e300
            n -= 300
        return value * 10.0 ** n
    # Dividing by an exact power of ten rounds correctly where multiplying by an inexact
    # reciprocal need not
    while n < -300:
        value /= 1e300
        n += 300
    return value / 10.0 ** -n


#
# Arithmetic helpers
#

def _add(op_tuple, lhs, rhs, context):
    if lhs.is_zero():
        return rhs
    if rhs.is_zero():
        return lhs

    if not lhs.is_finite() or not rhs.is_finite():
        result = ScaledValue.from_float(lhs.mantissa + rhs.mantissa)
        if result.is_nan() and not (lhs.is_nan() or rhs.is_nan()):
            # Addition of differently-signed infinities is an invalid op
            result = InvalidAdd(op_tuple, result).signal(context)
        return result

    comp = _compare_exponents(lhs.exponent, rhs.exponent)
    if comp == Compare.EQUAL:
        return _normalized(lhs.mantissa + rhs.mantissa, lhs.exponent, context)

    # Put the operand with the larger exponent in LHS
    if comp == Compare.LESS_THAN:
        lhs, rhs = rhs, lhs

    # Nested exponents differ from any other exponent by far more than the precision cliff
    if isinstance(lhs.exponent, ScaledValue) or isinstance(rhs.exponent, ScaledValue):
        return lhs

    delta = lhs.exponent - rhs.exponent
    if delta > PRECISION_CLIFF:
        return lhs
    return _normalized(lhs.mantissa + _scale10(rhs.mantissa, -delta), lhs.exponent, context)


def _exp10(value, context):
    '''Return 10 raised to the power value, a ScaledValue.'''
    return _normalized(1.0, value, context)


def _mantissa_digits(mantissa):
    '''Return the significant digits of the shortest text that round-trips the mantissa.'''
    return repr(abs(mantissa)).replace('.', '').rstrip('0') or '0'


def _convert(value):
    '''Convert an operand to a ScaledValue.'''
    result = convert_for_arith(value)
    if result is None:
        raise TypeError(f'cannot use {type(value).__name__} as a ScaledValue operand')
    return result


def convert_for_arith(value):
    '''Convert value to something capable of doing arithmetic with a ScaledValue.

    ScaledValues are returned unmodified and Python floats and ints are converted.
    Otherwise None is returned.
    '''
    if isinstance(value, ScaledValue):
        return value
    if isinstance(value, float):
        return ScaledValue.from_float(value)
    if isinstance(value, int):
        return ScaledValue.from_int(value)
    return None


def compare_any(value, other):
    '''LHS is a ScaledValue.  RHS is any type.

    Against a Python float or int, a value in the range of a float compares as its float
    image; a plain value beyond that range is compared to an int exactly.
    '''
    if isinstance(other, ScaledValue):
        return value.compare(other)
    if isinstance(other, (float, int)):
        number = value.to_float()
        if number is not None:
            return _compare_numbers(number, other)
        if isinstance(other, int) and not value.is_nested():
            return _compare_exact(value, other)
    other = convert_for_arith(other)
    if other is None:
        return None
    return value.compare(other)


def _compare_exact(value, integer):
    '''Compare a finite non-zero value with a plain exponent to an integer exactly.'''
    approx = ScaledValue.from_int(integer)
    comp = value.compare(approx)
    # Exponents two apart decide the order whatever the digits
    if approx.is_zero() or abs(value.exponent - approx.exponent) > 2:
        return comp
    exact = Fraction(value.mantissa) * Fraction(10) ** value.exponent
    return _compare_numbers(exact, integer)


def _hash_exact(mantissa, exponent):
    '''Return the Python hash of the rational mantissa * 10^exponent, equal to the hash of an
    int or Fraction with that value.'''
    modulus = sys.hash_info.modulus
    numerator, denominator = mantissa.as_integer_ratio()
    # The modulus is prime so powers of 10 repeat with period modulus - 1
    result = abs(numerator) * pow(10, exponent % (modulus - 1), modulus) % modulus
    result = result * pow(denominator, modulus - 2, modulus) % modulus
    if numerator < 0:
        result = -result
    return -2 if result == -1 else result


#
# Parsing
#

def _parse(string, text):
    '''Parse text, a stripped substring of string, as a ScaledValue.  The grammar is

        Value := special | decimal | Mantissa 'e' Value | Mantissa '× 10^(' Value ')'
    '''
    if not text:
        raise ParseError(string, 'input', text)

    special = SPECIAL_VALUES.get(text.lower())
    if special is not None:
        return special

    match = NESTED_FORM_REGEX.match(text)
    if match:
        return _parse_scientific(string, *match.groups())

    # Split at the first 'e'; everything after it is recursively a value
    match = EXPONENT_CHAR_REGEX.search(text)
    if match:
        return _parse_scientific(string, text[:match.start()], text[match.end():])

    value = _parse_decimal(text)
    if value is None:
        raise ParseError(string, 'input', text)
    return value


def _parse_scientific(string, mantissa_text, exponent_text):
    mantissa = _parse_decimal(mantissa_text.strip())
    if mantissa is None:
        raise ParseError(string, 'mantissa', mantissa_text)
    exponent = _parse_exponent(string, exponent_text.strip())
    return mantissa.multiply(_make(1.0, exponent) if isinstance(exponent, int)
                             else ScaledValue(1.0, exponent))


def _parse_exponent(string, text):
    '''Return the exponent text as a plain integer, or as a ScaledValue if it is not an
    integer in the plain range.'''
    # 20 characters hold any signed 64-bit integer
    if len(text) <= 20 and DEC_INTEGER_REGEX.match(text):
        exponent = int(text)
        if EXPONENT_MIN <= exponent <= EXPONENT_MAX:
            return exponent
    try:
        return _parse(string, text)
    except ParseError as e:
        raise ParseError(string, 'exponent', text) from e


def _parse_decimal(text):
    '''Return the decimal text as a ScaledValue, or None if it is not a decimal number.  The
    mantissa is formed from the leading significant digits so there is no overflow however
    many digits there are.'''
    match = DEC_MANTISSA_REGEX.match(text)
    if match is None:
        return None

    sign, int_part, fraction, whole = match.groups()
    if whole is not None:
        int_part, fraction = whole, ''
    digits = int_part + fraction
    significant = digits.lstrip('0')
    if not significant:
        return ZERO

    # The exponent of the leading significant digit
    exponent = len(int_part) - 1 - (len(digits) - len(significant))
    mantissa = float(f'{sign}{significant[0]}.{significant[1:]}')
    return _normalized(mantissa, exponent, None)


#
# Exported functions
#

DefaultContext = Context()
_thread_state = threading.local()


def get_context():
    '''Return the calling thread's context.  A thread starts with a copy of DefaultContext,
    so flags it raises are not seen by other threads.'''
    context = getattr(_thread_state, 'context', None)
    if context is None:
        context = _thread_state.context = DefaultContext.copy()
    return context


def set_context(context):
    '''Make context, itself and not a copy, the calling thread's context.'''
    _thread_state.context = context


class LocalContext:
    '''Context manager running a with-block under a copy of context, or of the thread's
    current context if none is given.  The thread's previous context is restored on exit,
    so flags and exceptions recorded inside the block stay with the copy.
    '''

    def __init__(self, context=None):
        self.template = context
        self.outer = None

    def __enter__(self):
        self.outer = get_context()
        inner = (self.template or self.outer).copy()
        set_context(inner)
        return inner

    def __exit__(self, etype, value, traceback):
        set_context(self.outer)


local_context = LocalContext

#
# Constants
#

log10_2 = math.log10(2)

ZERO = _make(0.0, 0)
ONE = _make(1.0, 0)
MINUS_ONE = _make(-1.0, 0)
HALF = _make(5.0, -1)
NAN = _make(math.nan, 0)
INFINITY = _make(math.inf, 0)
NEG_INFINITY = _make(-math.inf, 0)

total_order_key = cmp_to_key(lambda lhs, rhs: lhs.compare_total(rhs) - 1)

SPECIAL_VALUES = {
    'nan': NAN,
    'inf': INFINITY,
    '+inf': INFINITY,
    'infinity': INFINITY,
    '+infinity': INFINITY,
    '∞': INFINITY,
    '+∞': INFINITY,
    '-inf': NEG_INFINITY,
    '-infinity': NEG_INFINITY,
    '-∞': NEG_INFINITY,
    '0': ZERO,
    '0.0': ZERO,
}

EXPONENT_CHAR_REGEX = re.compile('[eE]')
DEC_INTEGER_REGEX = re.compile('[-+]?[0-9]+$', re.ASCII)
DEC_MANTISSA_REGEX = re.compile(
    # sign[opt]
    '([-+]?)'
    # (dec-integer[opt].fraction or dec-integer.[opt])
    '(?:([0-9]*)\\.([0-9]+)|([0-9]+)\\.?)$',
    re.ASCII
)
NESTED_FORM_REGEX = re.compile(
    # mantissa, a times sign, then 10^ and a parenthesized exponent
    '(.*?)\\s*[×x*]\\s*10\\^\\((.*)\\)$',
    re.IGNORECASE
)

# from_float() needs the regexes above
LN_10 = ScaledValue.from_float(math.log(10))
LOG10_E = ScaledValue.from_float(math.log10(math.e))
